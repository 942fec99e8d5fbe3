"""
Viewer Session

Composition root of the hanging-protocol and synchronization core. Builds
every service with explicit dependencies (no module-level singletons) and
wires viewport lifecycles:

- On LAYOUT_CHANGED / VIEWPORT_DATA_CHANGED each viewport's sync groups are
  re-registered (for a new layout, all of them before any content is set
  up), stale segmentation controllers are disposed, a hydration controller
  is created for viewports holding a segmentation display set, and other
  viewports get their stored segmentation representations back.
- A controller that disposes itself (its segmentation was removed) is
  dropped from hydration_controllers.
- teardown() (mode exit) disposes controllers, unsubscribes everything and
  clears stores, sync registry, segmentations and the grid.

Inputs:
    - DICOM files or directories, or ready-made display sets
    - Study UID / protocol id to open
    - Optional rendering engine, segmentation loader, hydration confirmation

Outputs:
    - A laid-out viewport grid with synchronized overlays

Requirements:
    - PySide6 (via core.event_bus)
    - pydicom (via core.dicom_loader)
"""

import os
from typing import Any, Dict, List, Optional

from core.commands import ViewerCommands
from core.dicom_loader import DICOMLoader
from core.display_set import DisplaySet
from core.display_set_factory import make_display_sets
from core.display_set_service import DisplaySetService
from core.errors import InvariantViolation
from core.event_bus import LAYOUT_CHANGED, VIEWPORT_DATA_CHANGED, EventBus
from core.hanging_protocol_service import HangingProtocolService
from core.notification_service import NotificationService
from core.presentation_state_store import SEGMENTATION_PRESENTATION, PresentationStores
from core.rendering_engine import HeadlessRenderingEngine, RenderingEngine
from core.segmentation_hydration import ConfirmCallable, HydrationPolicy, SegmentationHydrationController
from core.segmentation_service import SegmentationLoader, SegmentationService
from core.stage_selector import StageSelection
from core.sync_group_coordinator import HYDRATE_SEG_SYNC, SyncGroupCoordinator
from core.viewport_grid import GridViewport, ViewportGridService
from utils.config_manager import ConfigManager


class ViewerSession:
    """
    One viewer session (mode instance).

    Owns the event bus, registries, presentation stores, sync coordinator,
    segmentation service, hanging-protocol service and the per-viewport
    segmentation controllers.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        rendering_engine: Optional[RenderingEngine] = None,
        segmentation_loader: Optional[SegmentationLoader] = None,
        hydration_policy: Optional[HydrationPolicy] = None,
        confirm_hydration: Optional[ConfirmCallable] = None,
        stores: Optional[PresentationStores] = None,
    ):
        """
        Build the session services.

        Args:
            config_manager: Settings; a ConfigManager() is created when None
            rendering_engine: Rendering collaborator (headless when None)
            segmentation_loader: Decode collaborator returning Futures
            hydration_policy: Explicit policy; built from config when None
            confirm_hydration: Confirmation callable for prompt mode
            stores: Presentation stores with initial state
        """
        self.config_manager = config_manager if config_manager is not None else ConfigManager()
        self.rendering_engine = rendering_engine or HeadlessRenderingEngine()
        self.hydration_policy = hydration_policy or HydrationPolicy.from_config(
            self.config_manager, confirm_hydration)

        self.event_bus = EventBus()
        self.notification_service = NotificationService()
        self.dicom_loader = DICOMLoader()
        self.display_set_service = DisplaySetService(self.event_bus)
        self.viewport_grid = ViewportGridService(self.event_bus)
        self.stores = stores or PresentationStores()
        self.segmentation_service = SegmentationService(
            self.event_bus, self.display_set_service, self.rendering_engine, segmentation_loader)
        self.sync_coordinator = SyncGroupCoordinator(
            self.viewport_grid, self.display_set_service, self.rendering_engine)
        self.commands = ViewerCommands(
            self.viewport_grid, self.stores, self.segmentation_service, self.rendering_engine)
        self.hanging_protocol_service = HangingProtocolService(
            self.event_bus, self.display_set_service, self.viewport_grid,
            self.notification_service, self.config_manager)

        self.sync_coordinator.register_custom_synchronizer(HYDRATE_SEG_SYNC, self._sync_hydrate_segmentation)

        self.hydration_controllers: Dict[str, SegmentationHydrationController] = {}
        self._subscriptions = [
            self.event_bus.subscribe(LAYOUT_CHANGED, self._on_layout_changed),
            self.event_bus.subscribe(VIEWPORT_DATA_CHANGED, self._on_viewport_data_changed),
        ]
        self._torn_down = False

    # Data

    def load_datasets(self, datasets: List[Any]) -> List[DisplaySet]:
        """Group pydicom datasets into display sets and register them."""
        return self.display_set_service.add_display_sets(make_display_sets(datasets))

    def load_paths(self, paths: List[str]) -> List[DisplaySet]:
        """Load DICOM files and directories; unreadable files are reported and skipped."""
        datasets = []
        failures = []
        for path in paths:
            if os.path.isdir(path):
                datasets.extend(self.dicom_loader.load_directory(path))
            else:
                datasets.extend(self.dicom_loader.load_files([path]))
            failures.extend(self.dicom_loader.get_failed_files())
        for failed_path, reason in failures:
            print(f"[HANGING PROTOCOL] Skipped {failed_path}: {reason}")
        return self.load_datasets(datasets)

    def open_study(self, study_uid: str, protocol_id: Optional[str] = None) -> StageSelection:
        """Lay out a loaded study with a hanging protocol."""
        return self.hanging_protocol_service.run(study_uid, protocol_id)

    def get_hydration_controller(self, viewport_id: str) -> Optional[SegmentationHydrationController]:
        return self.hydration_controllers.get(viewport_id)

    # Viewport lifecycle

    def _on_layout_changed(self, payload: Dict[str, Any]) -> None:
        viewport_ids = set(payload.get("viewport_ids") or [])
        for viewport_id in list(self.hydration_controllers):
            if viewport_id not in viewport_ids:
                self._dispose_controller(viewport_id)
        for viewport_id in list(self._registered_sync_viewport_ids()):
            if viewport_id not in viewport_ids:
                self.sync_coordinator.remove_viewport(viewport_id)
        # Every slot joins its sync groups before any segmentation can hydrate into them
        viewports = self.viewport_grid.get_viewports()
        for viewport in viewports:
            self.sync_coordinator.register_viewport(viewport)
        for viewport in viewports:
            self._setup_viewport_content(viewport)

    def _on_viewport_data_changed(self, payload: Dict[str, Any]) -> None:
        viewport = self.viewport_grid.get_viewport(payload.get("viewport_id"))
        if viewport is not None:
            self.sync_coordinator.register_viewport(viewport)
            self._setup_viewport_content(viewport)


    def _registered_sync_viewport_ids(self) -> List[str]:
        viewport_ids = []
        for key in self.sync_coordinator.get_group_keys():
            for viewport_id in self.sync_coordinator.get_registered_members(key):
                if viewport_id not in viewport_ids:
                    viewport_ids.append(viewport_id)
        return viewport_ids

    def _setup_viewport_content(self, viewport: GridViewport) -> None:
        display_sets = [self.display_set_service.get_display_set_by_uid(uid)
                        for uid in viewport.display_set_instance_uids]
        segmentation_sets = [ds for ds in display_sets if ds is not None and ds.is_segmentation]

        existing = self.hydration_controllers.get(viewport.viewport_id)
        if existing is not None and (
                len(segmentation_sets) != 1 or existing.display_set is not segmentation_sets[0]):
            self._dispose_controller(viewport.viewport_id)
            existing = None

        if segmentation_sets:
            if existing is None:
                self._create_controller(viewport, display_sets)
            return
        # Representations follow the content; bring back what is stored for it
        self.segmentation_service.clear_segmentation_representations(viewport.viewport_id)
        self._restore_segmentation_presentation(viewport)

    def _create_controller(self, viewport: GridViewport, display_sets: List[Optional[DisplaySet]]) -> None:
        viewport_id = viewport.viewport_id
        if len(display_sets) != 1:
            error = InvariantViolation(
                f"Segmentation viewport {viewport_id} needs exactly one display set, got {len(display_sets)}",
                viewport_id=viewport_id,
            )
            print(f"[SEG] {error.message}")
            self.viewport_grid.set_viewport_error(viewport_id, error)
            self.notification_service.show_error(error)
            return
        controller = SegmentationHydrationController(
            viewport_id,
            display_sets[0],
            self.event_bus,
            self.display_set_service,
            self.viewport_grid,
            self.stores,
            self.segmentation_service,
            self.sync_coordinator,
            self.commands,
            self.notification_service,
            self.hydration_policy,
            on_dispose=self._forget_controller,
        )
        self.hydration_controllers[viewport_id] = controller
        controller.open()

    def _dispose_controller(self, viewport_id: str) -> None:
        controller = self.hydration_controllers.pop(viewport_id, None)
        if controller is not None:
            controller.dispose()

    def _forget_controller(self, controller: SegmentationHydrationController) -> None:
        # Controllers also dispose themselves, e.g. when their segmentation is removed
        if self.hydration_controllers.get(controller.viewport_id) is controller:
            del self.hydration_controllers[controller.viewport_id]

    def _restore_segmentation_presentation(self, viewport: GridViewport) -> None:
        key = viewport.get_presentation_ids()[SEGMENTATION_PRESENTATION]
        representations = self.stores.segmentation.get(key)
        if not representations:
            return
        for representation in representations:
            if self.segmentation_service.get_segmentation(representation.segmentation_id) is None:
                continue
            self.segmentation_service.add_segmentation_representation(
                viewport.viewport_id, representation.segmentation_id, representation.type)

    def _sync_hydrate_segmentation(self, target_viewport_id: str, payload: Dict[str, Any]) -> None:
        self.segmentation_service.add_segmentation_representation(
            target_viewport_id, payload["segmentation_id"], payload.get("representation_type", "Labelmap"))
        self.commands.run_command("storePresentation", viewport_id=target_viewport_id)

    # Teardown

    def teardown(self) -> None:
        """Mode exit: release every subscription and clear all session state."""
        if self._torn_down:
            return
        self._torn_down = True
        for viewport_id in list(self.hydration_controllers):
            self._dispose_controller(viewport_id)
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self.segmentation_service.remove_all_segmentations()
        self.segmentation_service.dispose()
        self.stores.clear()
        self.sync_coordinator.clear()
        self.hanging_protocol_service.reset()
        self.viewport_grid.reset()
        self.display_set_service.clear()
        self.notification_service.clear()
        self.event_bus.clear()
        print("[HANGING PROTOCOL] Session torn down")
