"""
Sync Group Coordinator

Registry of sync-group memberships per viewport and the propagation of state
changes between members. A group is identified by "type:id"; each viewport
joins with its own source/target flags.

Membership is recomputed on every propagation: a target is reached only if
it is currently open in the grid and satisfies the group's matching rules
(e.g. sameFOR: its frame of reference equals the originating one). The
originating viewport is never a target, and only source members may
originate. Propagation is one level: an update applied by a synchronizer does
not propagate again.

Built-in synchronizers:
    - position: camera of the source applied to targets
    - voi: window level / invert of the source applied to targets
Other types (hydrateseg, ...) are registered with register_custom_synchronizer.

Inputs:
    - Sync group definitions from merged viewport options
    - propagate(source_viewport_id, group_type, payload)

Outputs:
    - Synchronizer calls per reached target viewport

Requirements:
    - core.viewport_grid for open viewports
    - core.display_set_service for frame-of-reference lookup
"""

from typing import Any, Callable, Dict, List, Optional

from core.display_set_service import DisplaySetService
from core.hanging_protocol import SyncGroupDefinition
from core.presentation_state_store import PositionPresentation
from core.rendering_engine import RenderingEngine
from core.viewport_grid import GridViewport, ViewportGridService
from utils.debug_log import debug_log, sync_debug


POSITION_SYNC = "position"
VOI_SYNC = "voi"
HYDRATE_SEG_SYNC = "hydrateseg"

SAME_FOR = "sameFOR"

Synchronizer = Callable[[str, Dict[str, Any]], None]


class SyncGroupCoordinator:
    """
    Sync group registry and propagator.

    Features:
    - Per-viewport group membership with source/target flags
    - Membership re-evaluated against the open grid on every propagate()
    - Re-entrant propagate() calls ignored (one-level propagation)
    """

    def __init__(self, viewport_grid: ViewportGridService, display_set_service: DisplaySetService,
                 rendering_engine: Optional[RenderingEngine] = None):
        """
        Initialize the coordinator.

        Args:
            viewport_grid: Grid whose open viewports are candidate members
            display_set_service: Resolves viewport content for matching rules
            rendering_engine: Target of the built-in position/voi synchronizers
        """
        self.viewport_grid = viewport_grid
        self.display_set_service = display_set_service
        self.rendering_engine = rendering_engine
        # group key -> {viewport_id: membership}
        self._groups: Dict[str, Dict[str, SyncGroupDefinition]] = {}
        self._synchronizers: Dict[str, Synchronizer] = {
            POSITION_SYNC: self._sync_position,
            VOI_SYNC: self._sync_voi,
        }
        self._propagating = False

    # Registry

    def add_viewport_to_sync_group(self, viewport_id: str, sync_group: Any) -> SyncGroupDefinition:
        """Join a viewport to a group (dict, shorthand string or SyncGroupDefinition)."""
        definition = SyncGroupDefinition.from_dict(sync_group)
        self._groups.setdefault(definition.key, {})[viewport_id] = definition
        sync_debug(f"{viewport_id} joined {definition.key} (source={definition.source}, target={definition.target})")
        return definition

    def register_viewport(self, viewport: GridViewport) -> None:
        """Replace a viewport's memberships with the sync groups of its options."""
        self.remove_viewport(viewport.viewport_id)
        for sync_group in viewport.sync_groups:
            self.add_viewport_to_sync_group(viewport.viewport_id, sync_group)

    def remove_viewport(self, viewport_id: str) -> None:
        for key in list(self._groups):
            members = self._groups[key]
            members.pop(viewport_id, None)
            if not members:
                del self._groups[key]

    def get_sync_groups_for_viewport(self, viewport_id: str) -> List[SyncGroupDefinition]:
        return [members[viewport_id] for members in self._groups.values() if viewport_id in members]

    def get_group_keys(self) -> List[str]:
        return list(self._groups)

    def get_registered_members(self, group_key: str) -> List[str]:
        return list(self._groups.get(group_key, {}))

    def register_custom_synchronizer(self, group_type: str, synchronizer: Synchronizer) -> None:
        """Register the handler applying a group type's payload to one target viewport."""
        self._synchronizers[group_type] = synchronizer

    def clear(self) -> None:
        """Drop every membership (session teardown). Synchronizers stay registered."""
        self._groups.clear()
        self._propagating = False

    @property
    def is_propagating(self) -> bool:
        return self._propagating

    # Membership evaluation

    def get_viewport_frame_of_reference(self, viewport_id: str) -> Optional[str]:
        viewport = self.viewport_grid.get_viewport(viewport_id)
        if viewport is None:
            return None
        for uid in viewport.display_set_instance_uids:
            display_set = self.display_set_service.get_display_set_by_uid(uid)
            if display_set is not None and display_set.frame_of_reference_uid:
                return display_set.frame_of_reference_uid
        return None

    def _satisfies(self, rule_name: str, target_viewport_id: str, reference_for: Optional[str]) -> bool:
        if rule_name == SAME_FOR:
            target_for = self.get_viewport_frame_of_reference(target_viewport_id)
            return bool(reference_for) and target_for == reference_for
        print(f"[SYNC] Unknown sync matching rule {rule_name!r}; viewport {target_viewport_id} excluded")
        return False

    def _group_matching_rules(self, members: Dict[str, SyncGroupDefinition]) -> List[str]:
        for definition in members.values():
            if definition.matching_rules:
                return definition.matching_rules
        return []

    def compute_targets(self, source_viewport_id: str, group_key: str,
                        payload: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Current target members of a group for a change at source_viewport_id.

        Evaluated against the open grid each time it is called.
        """
        members = self._groups.get(group_key, {})
        source = members.get(source_viewport_id)
        if source is None or not source.source:
            return []
        payload = payload or {}
        reference_for = payload.get("frame_of_reference_uid") or self.get_viewport_frame_of_reference(
            source_viewport_id)
        rules = self._group_matching_rules(members)

        targets = []
        for viewport in self.viewport_grid.get_open_viewports():
            viewport_id = viewport.viewport_id
            if viewport_id == source_viewport_id:
                continue
            membership = members.get(viewport_id)
            if membership is None or not membership.target:
                continue
            if all(self._satisfies(rule, viewport_id, reference_for) for rule in rules):
                targets.append(viewport_id)
        return targets

    # Propagation

    def propagate(self, source_viewport_id: str, group_type: str, payload: Dict[str, Any]) -> List[str]:
        """
        Push a state change from a source viewport to its groups of a type.

        Args:
            source_viewport_id: Viewport where the change happened
            group_type: hydrateseg, position, voi or a custom type
            payload: Synchronizer data (frame_of_reference_uid narrows sameFOR groups)

        Returns:
            Viewport ids the change was applied to
        """
        if self._propagating:
            sync_debug(f"ignored nested {group_type} propagation from {source_viewport_id}")
            return []
        synchronizer = self._synchronizers.get(group_type)
        if synchronizer is None:
            print(f"[SYNC] No synchronizer registered for {group_type!r}")
            return []

        reached: List[str] = []
        self._propagating = True
        try:
            for definition in self.get_sync_groups_for_viewport(source_viewport_id):
                if definition.type != group_type:
                    continue
                for target_id in self.compute_targets(source_viewport_id, definition.key, payload):
                    if target_id in reached:
                        continue
                    try:
                        synchronizer(target_id, payload)
                    except Exception as e:
                        # Failure stays local to the target viewport
                        print(f"[SYNC] {group_type} sync to {target_id} failed: {e}")
                        continue
                    reached.append(target_id)
        finally:
            self._propagating = False

        debug_log("sync_group_coordinator.propagate", group_type,
                  {"source": source_viewport_id, "reached": reached})
        return reached

    def _current_presentation(self, viewport_id: str) -> PositionPresentation:
        current = self.rendering_engine.get_viewport_presentation(viewport_id)
        return current if current is not None else PositionPresentation()

    def _sync_position(self, target_viewport_id: str, payload: Dict[str, Any]) -> None:
        if self.rendering_engine is None:
            return
        presentation = self._current_presentation(target_viewport_id)
        presentation.camera = dict(payload.get("camera") or {})
        self.rendering_engine.set_viewport_presentation(target_viewport_id, presentation)

    def _sync_voi(self, target_viewport_id: str, payload: Dict[str, Any]) -> None:
        if self.rendering_engine is None:
            return
        presentation = self._current_presentation(target_viewport_id)
        presentation.window_center = payload.get("window_center")
        presentation.window_width = payload.get("window_width")
        presentation.invert = bool(payload.get("invert", False))
        self.rendering_engine.set_viewport_presentation(target_viewport_id, presentation)
