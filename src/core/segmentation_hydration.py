"""
Segmentation Hydration Controller

Drives one segmentation opened in one viewport through its lifecycle:

    UNLOADED -> LOADING -> LOADED -> HYDRATED

- open(): UNLOADED -> LOADING. Clears the viewport's segmentation
  representations, subscribes to the bus and starts decoding through the
  segmentation service (a Future).
- Decode completion (the Future or SEGMENTATION_LOADING_COMPLETE, whichever
  arrives first): LOADING -> LOADED. Later duplicates are no-ops.
- Decode failure: LOADING -> UNLOADED, terminal, with an error notification.
- Load cancelled (its display set or base was removed): LOADING -> UNLOADED.
- LOADED -> HYDRATED: after the HydrationPolicy agrees (automatic, or a
  confirmation callable in prompt mode). A declined prompt leaves LOADED.

Hydration stores the presentation of every grid viewport, records the
segmentation presentation for the base display set, shows the segmentation
in every same-frame-of-reference viewport through the hydrateseg sync group,
and finally puts the base display set back into this viewport.

dispose() unsubscribes everything; no callback acts after it.

Inputs:
    - SegmentationDisplaySet opened in a viewport
    - Bus events and decode Futures
    - HydrationPolicy (mode + confirmation callable)

Outputs:
    - State transitions, status for the viewport corner
    - Commands to stores and grid, hydrateseg sync propagation

Requirements:
    - core services of the viewer session
"""

from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Union

from core.commands import ViewerCommands
from core.display_set import SegmentationDisplaySet
from core.display_set_service import DisplaySetService
from core.errors import DecodeFailure, HangingCoreError, InvariantViolation, UnresolvedReference
from core.event_bus import (
    DISPLAY_SETS_REMOVED,
    SEGMENT_LOADING_COMPLETE,
    SEGMENTATION_LOADING_COMPLETE,
    SEGMENTATION_LOADING_FAILED,
    EventBus,
)
from core.notification_service import NotificationService
from core.presentation_state_store import LABELMAP, POSITION_PRESENTATION, PositionPresentation, PresentationStores
from core.segmentation_service import SegmentationService
from core.sync_group_coordinator import HYDRATE_SEG_SYNC, SyncGroupCoordinator
from core.viewport_grid import ViewportGridService
from utils.debug_log import debug_log


UNLOADED = "UNLOADED"
LOADING = "LOADING"
LOADED = "LOADED"
HYDRATED = "HYDRATED"

HYDRATION_STATES = (UNLOADED, LOADING, LOADED, HYDRATED)

# Allowed transitions; anything else is a programming error
_TRANSITIONS = {
    UNLOADED: (LOADING,),
    LOADING: (LOADED, UNLOADED),
    LOADED: (HYDRATED,),
    HYDRATED: (),
}

ConfirmCallable = Callable[["SegmentationHydrationController"], Union[bool, "Future[bool]"]]


def _completed(value: bool) -> "Future[bool]":
    future: "Future[bool]" = Future()
    future.set_result(value)
    return future


class HydrationPolicy:
    """
    Decides whether a loaded segmentation is hydrated.

    automatic: hydrate as soon as it is loaded.
    prompt: ask confirm(controller), which returns a bool or a Future[bool].
    Without a confirm callable, prompt mode waits for an explicit hydrate().
    """

    AUTOMATIC = "automatic"
    PROMPT = "prompt"

    def __init__(self, mode: str = PROMPT, confirm: Optional[ConfirmCallable] = None):
        if mode not in (self.AUTOMATIC, self.PROMPT):
            raise ValueError(f"Unknown hydration mode: {mode}")
        self.mode = mode
        self.confirm = confirm

    @classmethod
    def from_config(cls, config_manager, confirm: Optional[ConfirmCallable] = None) -> "HydrationPolicy":
        """Policy from the segmentation_hydration_mode / disable_confirmation_prompts settings."""
        mode = config_manager.get_segmentation_hydration_mode()
        if config_manager.get_disable_confirmation_prompts():
            mode = cls.AUTOMATIC
        return cls(mode, confirm)

    def request(self, controller: "SegmentationHydrationController") -> Optional["Future[bool]"]:
        """
        Ask whether to hydrate.

        Returns:
            Future with the answer, or None when the decision is left to the user
        """
        if self.mode == self.AUTOMATIC:
            return _completed(True)
        if self.confirm is None:
            return None
        answer = self.confirm(controller)
        if isinstance(answer, Future):
            return answer
        return _completed(bool(answer))


class SegmentationHydrationController:
    """
    Lifecycle of one segmentation display set shown in one viewport.

    Features:
    - Guarded state transitions
    - Idempotent load completion
    - Segment navigation skipping background index 0
    - Explicit dispose() of every bus subscription
    """

    def __init__(
        self,
        viewport_id: str,
        display_set: SegmentationDisplaySet,
        event_bus: EventBus,
        display_set_service: DisplaySetService,
        viewport_grid: ViewportGridService,
        stores: PresentationStores,
        segmentation_service: SegmentationService,
        sync_coordinator: SyncGroupCoordinator,
        commands: ViewerCommands,
        notification_service: NotificationService,
        policy: Optional[HydrationPolicy] = None,
        on_dispose: Optional[Callable[["SegmentationHydrationController"], None]] = None,
    ):
        if not display_set.is_segmentation:
            raise InvariantViolation(
                f"Viewport {viewport_id} needs a segmentation display set, got {display_set!r}",
                viewport_id=viewport_id,
            )
        self.viewport_id = viewport_id
        self.display_set = display_set
        self.event_bus = event_bus
        self.display_set_service = display_set_service
        self.viewport_grid = viewport_grid
        self.stores = stores
        self.segmentation_service = segmentation_service
        self.sync_coordinator = sync_coordinator
        self.commands = commands
        self.notification_service = notification_service
        self.policy = policy or HydrationPolicy()
        self.on_dispose = on_dispose

        self.state = HYDRATED if display_set.is_hydrated else UNLOADED
        self.selected_segment_index = 1
        self.percent_complete: Optional[float] = None
        self.total_segments: Optional[int] = None
        self.awaiting_confirmation = False
        self.error: Optional[HangingCoreError] = None
        self._subscriptions = []
        self._load_future: Optional[Future] = None
        self._disposed = False

    @property
    def segmentation_id(self) -> str:
        return self.display_set.display_set_instance_uid

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def is_active(self) -> bool:
        """True while this viewport is the grid's active viewport."""
        return self.viewport_grid.is_active(self.viewport_id)

    def get_active_viewport_ids(self) -> List[str]:
        """Viewports currently showing this segmentation."""
        return self.segmentation_service.get_viewport_ids_with_segmentation(self.segmentation_id)

    def _transition(self, new_state: str) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvariantViolation(
                f"Segmentation {self.segmentation_id}: illegal transition {self.state} -> {new_state}",
                viewport_id=self.viewport_id,
            )
        print(f"[SEG] {self.segmentation_id} in {self.viewport_id}: {self.state} -> {new_state}")
        self.state = new_state

    # Loading

    def open(self) -> Optional[Future]:
        """
        Open the segmentation in the viewport and start decoding.

        Returns:
            The decode Future, or None when nothing was started (already
            opened, hydrated, disposed, or terminally failed)
        """
        if self._disposed or self.state != UNLOADED or self.error is not None:
            return None
        # Single-overlay surface: start fresh
        self.segmentation_service.clear_segmentation_representations(self.viewport_id)
        self._subscriptions = [
            self.event_bus.subscribe(SEGMENTATION_LOADING_COMPLETE, self._on_loading_complete),
            self.event_bus.subscribe(SEGMENT_LOADING_COMPLETE, self._on_segment_loading_complete),
            self.event_bus.subscribe(SEGMENTATION_LOADING_FAILED, self._on_loading_failed),
            self.event_bus.subscribe(DISPLAY_SETS_REMOVED, self._on_display_sets_removed),
        ]
        self._transition(LOADING)
        self._load_future = self.segmentation_service.load_segmentation(self.display_set)
        self._load_future.add_done_callback(self._on_load_done)
        return self._load_future

    def _on_load_done(self, future: Future) -> None:
        if self._disposed:
            return
        if future.cancelled():
            if self.state == LOADING:
                self._transition(UNLOADED)
            return
        error = future.exception()
        if error is not None:
            self._fail(error)
        else:
            self._mark_loaded()

    def _on_loading_complete(self, payload: Dict[str, Any]) -> None:
        if payload.get("segmentation_id") == self.segmentation_id:
            self._mark_loaded()

    def _on_segment_loading_complete(self, payload: Dict[str, Any]) -> None:
        if self._disposed or payload.get("segmentation_id", self.segmentation_id) != self.segmentation_id:
            return
        self.percent_complete = payload.get("percent_complete")
        self.total_segments = payload.get("num_segments")

    def _on_loading_failed(self, payload: Dict[str, Any]) -> None:
        if payload.get("segmentation_id") == self.segmentation_id:
            self._fail(DecodeFailure(payload.get("error") or "Segmentation failed to load",
                                     segmentation_id=self.segmentation_id))

    def _fail(self, error: BaseException) -> None:
        if self._disposed or self.state != LOADING:
            return
        if not isinstance(error, HangingCoreError):
            error = DecodeFailure(str(error), segmentation_id=self.segmentation_id)
        self.error = error
        self._transition(UNLOADED)
        self.notification_service.show_error(error)

    def _mark_loaded(self) -> None:
        if self._disposed or self.state != LOADING:
            return
        self._transition(LOADED)
        self.display_set.is_loaded = True

        image_id = self.display_set.first_non_zero_voxel_image_id
        viewport = self.viewport_grid.get_viewport(self.viewport_id)
        if image_id and viewport is not None:
            key = viewport.get_presentation_ids()[POSITION_PRESENTATION]
            if key is not None:
                self.stores.position.set(key, PositionPresentation(view_reference={
                    "display_set_instance_uid": self.segmentation_id,
                    "image_id": image_id,
                }))
        self._request_hydration()

    # Hydration

    def _request_hydration(self) -> None:
        self.awaiting_confirmation = True
        answer = self.policy.request(self)
        if answer is None:
            return
        answer.add_done_callback(self._on_hydration_answer)

    def _on_hydration_answer(self, answer: "Future[bool]") -> None:
        if self._disposed or self.state != LOADED:
            return
        if answer.cancelled() or answer.exception() is not None or not answer.result():
            self.decline()
            return
        self.hydrate()

    def decline(self) -> None:
        """User declined hydration; the segmentation stays LOADED."""
        self.awaiting_confirmation = False
        print(f"[SEG] Hydration of {self.segmentation_id} declined")

    def hydrate(self) -> bool:
        """
        Hydrate the loaded segmentation.

        Returns:
            True if the segmentation is hydrated after the call
        """
        if self._disposed:
            return False
        if self.state == HYDRATED:
            return True
        if self.state != LOADED:
            return False

        base_uid = self.display_set.referenced_display_set_instance_uid
        base = self.display_set_service.get_display_set_by_uid(base_uid)
        if base is None:
            error = UnresolvedReference(
                f"Segmentation {self.segmentation_id} references unavailable display set {base_uid}",
                viewport_id=self.viewport_id,
            )
            self.notification_service.show_error(error)
            return False

        for viewport in self.viewport_grid.get_viewports():
            self.commands.run_command("storePresentation", viewport_id=viewport.viewport_id)
        self.commands.run_command("updateStoredSegmentationPresentation", display_set=self.display_set,
                                  type=LABELMAP, viewport_id=self.viewport_id)
        self.commands.run_command("updateStoredPositionPresentation", viewport_id=self.viewport_id,
                                  display_set_instance_uid=base_uid)

        self.segmentation_service.add_segmentation_representation(self.viewport_id, self.segmentation_id, LABELMAP)
        self._transition(HYDRATED)
        self.display_set.is_hydrated = True
        self.awaiting_confirmation = False

        reached = self.sync_coordinator.propagate(self.viewport_id, HYDRATE_SEG_SYNC, {
            "segmentation_id": self.segmentation_id,
            "representation_type": LABELMAP,
            "frame_of_reference_uid": self.display_set.frame_of_reference_uid or base.frame_of_reference_uid,
        })
        debug_log("segmentation_hydration.hydrate", self.segmentation_id,
                  {"viewport_id": self.viewport_id, "synced": reached})

        # Base display set back in place; this viewport stops being a segmentation viewport
        self.commands.run_command("setDisplaySetsForViewport", viewport_id=self.viewport_id,
                                  display_set_instance_uids=[base_uid])
        return True

    # Navigation

    def segment_change(self, direction: int) -> int:
        """
        Select the next (+1) or previous (-1) segment and re-center on it.

        Only existing segment indices are visited (removed segments leave
        gaps); wraps from the last to the first and back. 0 is never selected.

        Returns:
            The newly selected segment index
        """
        segmentation = self.segmentation_service.get_segmentation(self.segmentation_id)
        segments = segmentation.segments if segmentation is not None else self.display_set.segments
        indices = sorted(segments)
        if not indices:
            return self.selected_segment_index

        if direction > 0:
            following = [index for index in indices if index > self.selected_segment_index]
            new_index = following[0] if following else indices[0]
        else:
            preceding = [index for index in indices if index < self.selected_segment_index]
            new_index = preceding[-1] if preceding else indices[-1]

        self.selected_segment_index = new_index
        if segmentation is not None:
            self.commands.run_command("jumpToSegmentCenter", segmentation_id=self.segmentation_id,
                                      segment_index=new_index, viewport_id=self.viewport_id)
        return new_index

    # Status

    def get_status(self) -> Dict[str, Any]:
        """State for the viewport status corner and loading indicator."""
        if self.state == HYDRATED:
            tooltip = "This segmentation is hydrated and shown in matching viewports"
        elif self.state == LOADING:
            tooltip = "Loading segmentation"
        elif self.error is not None:
            tooltip = f"Segmentation failed to load: {self.error.message}"
        else:
            tooltip = "Click to hydrate the segmentation"
        return {
            "state": self.state,
            "is_hydrated": self.state == HYDRATED,
            "is_loading": self.state == LOADING,
            "awaiting_confirmation": self.awaiting_confirmation,
            "percent_complete": self.percent_complete,
            "total_segments": self.total_segments,
            "selected_segment_index": self.selected_segment_index,
            "error": self.error.message if self.error is not None else None,
            "tooltip": tooltip,
        }

    def get_referenced_display_set_metadata(self) -> Dict[str, Any]:
        """
        Header of the base display set for the viewport overlay.

        Slice thickness and spacing fall back to the segmentation's own pixel measures.
        """
        base = self.display_set_service.get_display_set_by_uid(
            self.display_set.referenced_display_set_instance_uid)
        if base is None:
            return {}
        metadata = base.metadata
        return {
            "PatientID": metadata.get("PatientID"),
            "PatientName": metadata.get("PatientName"),
            "PatientSex": metadata.get("PatientSex"),
            "PatientAge": metadata.get("PatientAge"),
            "SliceThickness": base.slice_thickness or self.display_set.segmentation_slice_thickness,
            "StudyDate": metadata.get("StudyDate"),
            "SeriesDescription": base.series_description,
            "SeriesInstanceUID": base.series_instance_uid,
            "SeriesNumber": base.series_number,
            "ManufacturerModelName": metadata.get("ManufacturerModelName"),
            "SpacingBetweenSlices": metadata.get("SpacingBetweenSlices") or self.display_set.spacing_between_slices,
        }

    # Teardown

    def _on_display_sets_removed(self, payload: Dict[str, Any]) -> None:
        if self._disposed:
            return
        removed = payload.get("display_set_instance_uids") or []
        if self.segmentation_id not in removed:
            return
        self.segmentation_service.remove_segmentation_representations(self.segmentation_id)
        viewport = self.viewport_grid.get_viewport(self.viewport_id)
        if self.viewport_grid.is_active(self.viewport_id) and viewport is not None and not viewport.is_empty:
            self.commands.run_command("setDisplaySetsForViewport", viewport_id=self.viewport_id,
                                      display_set_instance_uids=[])
        self.dispose()

    def dispose(self) -> None:
        """Unsubscribe every listener. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        if self.on_dispose is not None:
            self.on_dispose(self)
