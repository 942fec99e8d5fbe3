"""
Viewport Grid Assigner

Turns a stage selection into concrete viewport slots. For every slot of the
stage grid it resolves the viewport definition's display-set references into
display sets from the ranked lists and merges viewport options
(stage default < viewport definition; padded slots also take the protocol
default underneath, so declared viewports without syncGroups join no group).

This assignment is the only place that binds display content to a physical
slot; grid components render purely from its output.

Rules:
    - Index beyond the ranked list with allow_unmatched_view -> empty slot
    - Index beyond the ranked list without it -> UnresolvedReference reported,
      slot renders empty, siblings unaffected
    - A ranked-list entry is bound to at most one slot
    - Slots missing from the stage definition are filled from the protocol
      default viewport; definitions beyond the grid shape are an
      InvariantViolation

Inputs:
    - StageSelection from stage_selector

Outputs:
    - Ordered list of ViewportAssignment

Requirements:
    - core.stage_selector for index resolution
"""

import copy
from typing import Any, Dict, List, Optional, Set, Tuple

from core.errors import HangingCoreError, InvariantViolation, UnresolvedReference
from core.hanging_protocol import ViewportDefinition
from core.notification_service import NotificationService
from core.stage_selector import StageSelection, resolve_matched_index
from utils.debug_log import debug_log


DEFAULT_VIEWPORT_OPTIONS = {
    "viewport_type": "stack",
    "tool_group_id": "default",
    "allow_unmatched_view": False,
    "sync_groups": [],
}


class ViewportAssignment:
    """Final binding of one grid slot."""

    def __init__(self, slot: int, viewport_id: str, display_set_instance_uids: List[str],
                 viewport_options: Dict[str, Any], error: Optional[HangingCoreError] = None):
        self.slot = slot
        self.viewport_id = viewport_id
        self.display_set_instance_uids = list(display_set_instance_uids)
        self.viewport_options = viewport_options
        self.error = error

    @property
    def is_empty(self) -> bool:
        return not self.display_set_instance_uids

    def __repr__(self) -> str:
        return f"ViewportAssignment(slot={self.slot}, {self.viewport_id!r}, {self.display_set_instance_uids})"


def get_viewport_id_for_slot(slot: int) -> str:
    """Stable viewport id for a grid slot."""
    return "default" if slot == 0 else f"viewport-{slot}"


def merge_viewport_options(*layers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge option dicts; later layers win key by key.

    sync_groups is replaced wholesale, never concatenated.
    """
    merged = copy.deepcopy(DEFAULT_VIEWPORT_OPTIONS)
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            merged[key] = copy.deepcopy(value)
    return merged


def _resolve_definition(
    slot: int,
    definition: ViewportDefinition,
    selection: StageSelection,
    options: Dict[str, Any],
    used_entries: Set[Tuple[str, int]],
) -> Tuple[List[str], Optional[HangingCoreError]]:
    viewport_id = options.get("viewport_id") or get_viewport_id_for_slot(slot)
    allow_unmatched = bool(options.get("allow_unmatched_view"))
    uids: List[str] = []
    for reference in definition.display_sets:
        ranked = selection.rankings.get(reference.selector_id, [])
        position = resolve_matched_index(reference.index, len(ranked))
        if position is not None and (reference.selector_id, position) in used_entries:
            # Entry already shown in an earlier slot
            position = None
        if position is None:
            if allow_unmatched:
                return [], None
            return [], UnresolvedReference(
                f"Viewport {viewport_id}: selector {reference.selector_id!r} index {reference.index} "
                f"is beyond {len(ranked)} match(es)",
                viewport_id=viewport_id,
                selector_id=reference.selector_id,
                index=reference.index,
            )
        used_entries.add((reference.selector_id, position))
        uids.append(ranked[position].display_set_instance_uid)
    return uids, None


def assign_viewports(selection: StageSelection,
                     notification_service: Optional[NotificationService] = None) -> List[ViewportAssignment]:
    """
    Build the slot assignments for a selected stage.

    Args:
        selection: Result of select_stage
        notification_service: Receives UnresolvedReference reports

    Returns:
        One ViewportAssignment per grid slot, in slot order

    Raises:
        InvariantViolation: if the stage declares more viewports than grid slots
    """
    protocol = selection.protocol
    stage = selection.stage
    slot_count = stage.slot_count
    if len(stage.viewports) > slot_count:
        raise InvariantViolation(
            f"Stage {stage.id} declares {len(stage.viewports)} viewports for a "
            f"{stage.rows}x{stage.columns} grid"
        )

    stage_defaults = stage.default_viewport.viewport_options if stage.default_viewport else None
    used_entries: Set[Tuple[str, int]] = set()
    assignments: List[ViewportAssignment] = []

    for slot in range(slot_count):
        padded = slot >= len(stage.viewports)
        if padded:
            definition = stage.default_viewport or protocol.default_viewport
        else:
            definition = stage.viewports[slot]
        if not definition.display_sets and protocol.default_viewport.display_sets:
            definition = ViewportDefinition(definition.viewport_options, protocol.default_viewport.display_sets)

        # Declared viewports keep their own sync groups; protocol defaults only fill padding
        options = merge_viewport_options(
            protocol.default_viewport.viewport_options if padded else None,
            stage_defaults,
            definition.viewport_options,
        )
        viewport_id = options.get("viewport_id") or get_viewport_id_for_slot(slot)
        options["viewport_id"] = viewport_id

        uids, error = _resolve_definition(slot, definition, selection, options, used_entries)
        if error is not None:
            print(f"[HANGING PROTOCOL] {error.message}")
            if notification_service is not None:
                notification_service.show_error(error)
        assignments.append(ViewportAssignment(slot, viewport_id, uids, options, error))

    debug_log("viewport_grid_assigner.assign_viewports", "assigned stage", {
        "protocol": protocol.id, "stage": stage.id,
        "slots": [a.display_set_instance_uids for a in assignments],
    })
    return assignments
