"""
Viewer Commands

Named commands the core issues to move state between the viewport grid, the
rendering engine and the presentation stores. Callers go through
run_command(name, **options) so hosting applications can wrap or replace
individual commands.

Commands:
    - storePresentation(viewport_id)
    - updateStoredPositionPresentation(viewport_id, display_set_instance_uid)
    - updateStoredSegmentationPresentation(display_set, type, viewport_id=None)
    - setDisplaySetsForViewport(viewport_id, display_set_instance_uids)
    - jumpToSegmentCenter(segmentation_id, segment_index, viewport_id)

Inputs:
    - Command names and keyword options

Outputs:
    - Presentation store writes, grid changes, camera moves

Requirements:
    - core.presentation_state_store for keys and state types
"""

from typing import Any, Callable, Dict, List, Optional

from core.display_set import DisplaySet
from core.presentation_state_store import (
    LABELMAP,
    POSITION_PRESENTATION,
    SEGMENTATION_PRESENTATION,
    PositionPresentation,
    PresentationStores,
    SegmentationRepresentation,
    get_presentation_id,
)
from core.rendering_engine import RenderingEngine
from core.segmentation_service import SegmentationService
from core.viewport_grid import ViewportGridService
from utils.debug_log import debug_log


class ViewerCommands:
    """Command registry bound to the services of one session."""

    def __init__(self, viewport_grid: ViewportGridService, stores: PresentationStores,
                 segmentation_service: SegmentationService, rendering_engine: RenderingEngine):
        self.viewport_grid = viewport_grid
        self.stores = stores
        self.segmentation_service = segmentation_service
        self.rendering_engine = rendering_engine
        self._commands: Dict[str, Callable[..., Any]] = {
            "storePresentation": self.store_presentation,
            "updateStoredPositionPresentation": self.update_stored_position_presentation,
            "updateStoredSegmentationPresentation": self.update_stored_segmentation_presentation,
            "setDisplaySetsForViewport": self.set_display_sets_for_viewport,
            "jumpToSegmentCenter": self.jump_to_segment_center,
        }

    def register_command(self, name: str, command: Callable[..., Any]) -> None:
        self._commands[name] = command

    def get_command_names(self) -> List[str]:
        return list(self._commands)

    def run_command(self, name: str, **options) -> Any:
        """
        Run a named command.

        Raises:
            KeyError: for unknown command names
        """
        command = self._commands.get(name)
        if command is None:
            raise KeyError(f"Unknown command: {name}")
        debug_log("commands.run_command", name, options)
        return command(**options)

    def store_presentation(self, viewport_id: str) -> bool:
        """
        Save a viewport's current camera and segmentation representations
        under the presentation ids of its content.

        Returns:
            True if anything was stored
        """
        viewport = self.viewport_grid.get_viewport(viewport_id)
        if viewport is None or viewport.is_empty:
            return False
        presentation_ids = viewport.get_presentation_ids()
        stored = False

        position = self.rendering_engine.get_viewport_presentation(viewport_id)
        if position is not None:
            self.stores.position.set(presentation_ids[POSITION_PRESENTATION], position)
            stored = True

        representations = self.segmentation_service.get_segmentation_representations(viewport_id)
        if representations:
            self.stores.segmentation.set(presentation_ids[SEGMENTATION_PRESENTATION], representations)
            stored = True
        return stored

    def update_stored_position_presentation(self, viewport_id: str,
                                            display_set_instance_uid: str) -> Optional[str]:
        """
        Store the viewport's current camera for a display set it is about to show.

        Returns:
            The position presentation id written, or None
        """
        viewport = self.viewport_grid.get_viewport(viewport_id)
        if viewport is None:
            return None
        key = get_presentation_id(POSITION_PRESENTATION, viewport.viewport_options, [display_set_instance_uid])
        if key is None:
            return None
        presentation = self.rendering_engine.get_viewport_presentation(viewport_id)
        if presentation is None:
            # Fall back to what is stored for the current content
            current = self.stores.position.get(viewport.get_presentation_ids()[POSITION_PRESENTATION])
            presentation = current.copy() if current is not None else PositionPresentation()
        presentation.view_reference["display_set_instance_uid"] = display_set_instance_uid
        self.stores.position.set(key, presentation)
        return key

    def update_stored_segmentation_presentation(self, display_set: DisplaySet, type: str = LABELMAP,
                                                viewport_id: Optional[str] = None) -> Optional[str]:
        """
        Record that the base display set of a segmentation shows it, so the
        representation is restored whenever that content is displayed.

        Returns:
            The segmentation presentation id written, or None
        """
        base_uid = display_set.referenced_display_set_instance_uid
        if not base_uid:
            return None
        options: Dict[str, Any] = {}
        if viewport_id is not None:
            viewport = self.viewport_grid.get_viewport(viewport_id)
            if viewport is not None:
                options = viewport.viewport_options
        key = get_presentation_id(SEGMENTATION_PRESENTATION, options, [base_uid])
        self.stores.segmentation.set(key, [SegmentationRepresentation(display_set.display_set_instance_uid, type)])
        return key

    def set_display_sets_for_viewport(self, viewport_id: str, display_set_instance_uids: List[str]) -> None:
        self.viewport_grid.set_display_sets_for_viewport(viewport_id, display_set_instance_uids)

    def jump_to_segment_center(self, segmentation_id: str, segment_index: int, viewport_id: str) -> bool:
        return self.segmentation_service.jump_to_segment_center(segmentation_id, segment_index, viewport_id)
