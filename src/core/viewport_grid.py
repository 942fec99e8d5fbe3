"""
Viewport Grid Service

Grid state of a viewer session: layout shape, one GridViewport per slot and
the active viewport. The grid renders purely from the assigner's output
(set_layout_from_assignments); later content changes go through
set_display_sets_for_viewport.

Inputs:
    - ViewportAssignment lists from viewport_grid_assigner
    - Display-set changes from commands

Outputs:
    - LAYOUT_CHANGED / VIEWPORT_DATA_CHANGED / ACTIVE_VIEWPORT_CHANGED events
    - Viewport lookups for sync membership and presentation ids

Requirements:
    - core.event_bus for event publication
"""

from typing import Any, Dict, List, Optional

from core.errors import HangingCoreError, InvariantViolation
from core.event_bus import ACTIVE_VIEWPORT_CHANGED, LAYOUT_CHANGED, VIEWPORT_DATA_CHANGED, EventBus
from core.presentation_state_store import (
    POSITION_PRESENTATION,
    SEGMENTATION_PRESENTATION,
    get_presentation_id,
)
from core.viewport_grid_assigner import ViewportAssignment
from utils.debug_log import debug_log


class GridViewport:
    """One slot of the grid."""

    def __init__(self, viewport_id: str, slot: int, display_set_instance_uids: Optional[List[str]] = None,
                 viewport_options: Optional[Dict[str, Any]] = None,
                 error: Optional[HangingCoreError] = None):
        self.viewport_id = viewport_id
        self.slot = slot
        self.display_set_instance_uids: List[str] = list(display_set_instance_uids or [])
        self.viewport_options: Dict[str, Any] = dict(viewport_options or {})
        # Set when the viewport could not be constructed; it then renders nothing
        self.error = error

    @property
    def is_empty(self) -> bool:
        return not self.display_set_instance_uids

    @property
    def sync_groups(self) -> list:
        return list(self.viewport_options.get("sync_groups") or [])

    def get_presentation_ids(self) -> Dict[str, Optional[str]]:
        return {
            POSITION_PRESENTATION: get_presentation_id(
                POSITION_PRESENTATION, self.viewport_options, self.display_set_instance_uids),
            SEGMENTATION_PRESENTATION: get_presentation_id(
                SEGMENTATION_PRESENTATION, self.viewport_options, self.display_set_instance_uids),
        }

    def __repr__(self) -> str:
        return f"GridViewport({self.viewport_id!r}, slot={self.slot}, {self.display_set_instance_uids})"


class ViewportGridService:
    """Holds and mutates the viewport grid."""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self.rows = 1
        self.columns = 1
        self.layout_type = "grid"
        self._viewports: Dict[str, GridViewport] = {}
        self._order: List[str] = []
        self.active_viewport_id: Optional[str] = None

    def set_layout_from_assignments(self, rows: int, columns: int, assignments: List[ViewportAssignment],
                                    layout_type: str = "grid", active_viewport_id: Optional[str] = None) -> None:
        """
        Replace the grid with a stage's assignments.

        Raises:
            InvariantViolation: if the assignment count differs from rows * columns
        """
        if len(assignments) != rows * columns:
            raise InvariantViolation(
                f"Grid {rows}x{columns} needs {rows * columns} viewports, got {len(assignments)}"
            )
        self.rows = rows
        self.columns = columns
        self.layout_type = layout_type
        self._viewports = {}
        self._order = []
        for assignment in assignments:
            viewport = GridViewport(
                assignment.viewport_id,
                assignment.slot,
                assignment.display_set_instance_uids,
                assignment.viewport_options,
                assignment.error,
            )
            self._viewports[viewport.viewport_id] = viewport
            self._order.append(viewport.viewport_id)

        if active_viewport_id not in self._viewports:
            active_viewport_id = self._order[0] if self._order else None
        self.active_viewport_id = active_viewport_id
        print(f"[GRID] Layout {rows}x{columns}: {[self._viewports[v].display_set_instance_uids for v in self._order]}")
        self.event_bus.publish(LAYOUT_CHANGED, {
            "rows": rows,
            "columns": columns,
            "viewport_ids": list(self._order),
            "active_viewport_id": self.active_viewport_id,
        })

    def set_display_sets_for_viewport(self, viewport_id: str, display_set_instance_uids: List[str],
                                      viewport_options: Optional[Dict[str, Any]] = None) -> GridViewport:
        """
        Change the content of one viewport.

        Raises:
            KeyError: if the viewport is not in the grid
        """
        viewport = self._viewports.get(viewport_id)
        if viewport is None:
            raise KeyError(f"Unknown viewport: {viewport_id}")
        viewport.display_set_instance_uids = list(display_set_instance_uids)
        viewport.error = None
        if viewport_options:
            viewport.viewport_options.update(viewport_options)
        debug_log("viewport_grid.set_display_sets_for_viewport", viewport_id,
                  {"display_set_instance_uids": viewport.display_set_instance_uids})
        self.event_bus.publish(VIEWPORT_DATA_CHANGED, {
            "viewport_id": viewport_id,
            "display_set_instance_uids": list(viewport.display_set_instance_uids),
        })
        return viewport

    def set_viewport_error(self, viewport_id: str, error: HangingCoreError) -> None:
        """Mark a viewport as failed; it renders nothing."""
        viewport = self._viewports.get(viewport_id)
        if viewport is not None:
            viewport.error = error

    def set_active_viewport(self, viewport_id: str) -> None:
        if viewport_id not in self._viewports:
            raise KeyError(f"Unknown viewport: {viewport_id}")
        if viewport_id == self.active_viewport_id:
            return
        self.active_viewport_id = viewport_id
        self.event_bus.publish(ACTIVE_VIEWPORT_CHANGED, {"viewport_id": viewport_id})

    def get_viewport(self, viewport_id: str) -> Optional[GridViewport]:
        return self._viewports.get(viewport_id)

    def get_viewports(self) -> List[GridViewport]:
        """All viewports in slot order."""
        return [self._viewports[v] for v in self._order]

    def get_open_viewports(self) -> List[GridViewport]:
        """Viewports currently showing content."""
        return [v for v in self.get_viewports() if not v.is_empty and v.error is None]

    def get_viewport_ids_showing(self, display_set_instance_uid: str) -> List[str]:
        return [v.viewport_id for v in self.get_viewports()
                if display_set_instance_uid in v.display_set_instance_uids]

    def is_active(self, viewport_id: str) -> bool:
        return viewport_id == self.active_viewport_id

    def reset(self) -> None:
        self.rows = 1
        self.columns = 1
        self._viewports = {}
        self._order = []
        self.active_viewport_id = None
