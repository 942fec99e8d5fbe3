"""
Hanging Protocol Service

Registry of hanging protocols and the entry point that lays a study out:
choose a protocol (explicit id, best protocolMatchingRules score, or the
configured default), select its first activatable stage, assign display sets
to grid slots and hand the result to the viewport grid.

A MatchFailure of the chosen protocol falls back to the default protocol
(@ohif/mnGrid unless configured otherwise). Stage navigation moves to the
next/previous activatable stage of the active protocol.

Inputs:
    - Protocol definitions (dicts or Protocol objects)
    - Study UID to lay out
    - ConfigManager settings (default protocol, priors limit, recent ids)

Outputs:
    - Viewport grid layout
    - PROTOCOL_CHANGED events
    - Warning notifications on fallback

Requirements:
    - core.stage_selector and core.viewport_grid_assigner
"""

from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from core.display_set_service import DisplaySetService
from core.errors import MatchFailure
from core.event_bus import PROTOCOL_CHANGED, EventBus
from core.hanging_protocol import Protocol
from core.matching_rules import validate_rule
from core.notification_service import NotificationService
from core.protocols.mn_grid import get_mn_grid_protocol
from core.stage_selector import (
    StageSelection,
    count_matched_viewports,
    compute_rankings,
    eligible_display_sets,
    find_best_protocol,
    select_stage,
    select_stage_at,
)
from core.viewport_grid import ViewportGridService
from core.viewport_grid_assigner import ViewportAssignment, assign_viewports
from utils.debug_log import debug_log


DEFAULT_PROTOCOL_ID = "@ohif/mnGrid"


class HangingProtocolService:
    """
    Protocol registry and layout driver.

    Features:
    - Explicit, scored or default protocol choice
    - Fallback to the default protocol on MatchFailure
    - Stage navigation honouring activation thresholds
    - Custom attributes available to every matching rule
    """

    def __init__(self, event_bus: EventBus, display_set_service: DisplaySetService,
                 viewport_grid: ViewportGridService, notification_service: NotificationService,
                 config_manager=None):
        """
        Initialize the service with the built-in MN grid protocol registered.

        Args:
            event_bus: Session bus
            display_set_service: Source of studies and display sets
            viewport_grid: Grid receiving stage assignments
            notification_service: Receives fallback and reference warnings
            config_manager: Optional ConfigManager
        """
        self.event_bus = event_bus
        self.display_set_service = display_set_service
        self.viewport_grid = viewport_grid
        self.notification_service = notification_service
        self.config_manager = config_manager
        self._protocols: "OrderedDict[str, Protocol]" = OrderedDict()
        self._custom_attributes: Dict[str, Callable[[Any], Any]] = {}

        self.active_protocol: Optional[Protocol] = None
        self.active_study_uid: Optional[str] = None
        self.active_selection: Optional[StageSelection] = None
        self.active_assignments: List[ViewportAssignment] = []

        self.add_protocol(get_mn_grid_protocol())

    # Registry

    def add_protocol(self, protocol: Union[Protocol, Mapping[str, Any]]) -> Protocol:
        """Register (or replace) a protocol. Rule authoring problems are printed."""
        if not isinstance(protocol, Protocol):
            protocol = Protocol.from_dict(protocol)
        rule_lists = [protocol.protocol_matching_rules] + list(protocol.display_set_selectors.values())
        for rules in rule_lists:
            for rule in rules:
                for problem in validate_rule(rule):
                    print(f"[HANGING PROTOCOL] {protocol.id}: {problem}")
        self._protocols[protocol.id] = protocol
        return protocol

    def get_protocol(self, protocol_id: str) -> Optional[Protocol]:
        return self._protocols.get(protocol_id)

    def get_protocols(self) -> List[Protocol]:
        return list(self._protocols.values())

    def register_custom_attribute(self, name: str, fn: Callable[[Any], Any]) -> None:
        """Make a computed attribute available to matching rules (fn receives the candidate)."""
        self._custom_attributes[name] = fn

    @property
    def default_protocol_id(self) -> str:
        if self.config_manager is not None:
            return self.config_manager.get_default_protocol_id() or DEFAULT_PROTOCOL_ID
        return DEFAULT_PROTOCOL_ID

    def _priors_limit(self) -> int:
        if self.config_manager is None:
            return -1
        return self.config_manager.get_number_of_priors_referenced_limit()

    # Running

    def _candidates(self, protocol: Protocol, study_uid: str):
        studies = [self.display_set_service.get_study(uid) for uid in self.display_set_service.get_study_uids()]
        return eligible_display_sets(protocol, [s for s in studies if s is not None], study_uid,
                                     self._priors_limit())

    def _choose_protocol(self, study_uid: str, protocol_id: Optional[str]) -> Protocol:
        if protocol_id is not None:
            protocol = self._protocols.get(protocol_id)
            if protocol is None:
                raise MatchFailure(f"Unknown hanging protocol: {protocol_id}", protocol_id=protocol_id)
            return protocol
        study = self.display_set_service.get_study(study_uid)
        best = find_best_protocol(self.get_protocols(), study, self._custom_attributes)
        if best is not None:
            return best
        return self._protocols[self.default_protocol_id]

    def run(self, study_uid: str, protocol_id: Optional[str] = None) -> StageSelection:
        """
        Lay out a study.

        Args:
            study_uid: Current study
            protocol_id: Explicit protocol; chosen by score when None

        Returns:
            The applied StageSelection

        Raises:
            MatchFailure: if neither the chosen nor the default protocol can be activated
        """
        if self.display_set_service.get_study(study_uid) is None:
            raise MatchFailure(f"Study {study_uid} is not loaded")
        try:
            protocol = self._choose_protocol(study_uid, protocol_id)
            return self._apply(protocol, study_uid)
        except MatchFailure as e:
            default_id = self.default_protocol_id
            if e.protocol_id == default_id or default_id not in self._protocols:
                raise
            print(f"[HANGING PROTOCOL] {e.message}; falling back to {default_id}")
            self.notification_service.show(e.title, f"{e.message}. Using {default_id}.", "warning")
            return self._apply(self._protocols[default_id], study_uid)

    def _apply(self, protocol: Protocol, study_uid: str, stage_index: Optional[int] = None) -> StageSelection:
        candidates = self._candidates(protocol, study_uid)
        if stage_index is None:
            selection = select_stage(protocol, candidates, self._custom_attributes)
        else:
            selection = select_stage_at(protocol, stage_index, candidates, self._custom_attributes)
        assignments = assign_viewports(selection, self.notification_service)

        self.active_protocol = protocol
        self.active_study_uid = study_uid
        self.active_selection = selection
        self.active_assignments = assignments

        active_viewport_id = None
        if self.config_manager is not None:
            active_viewport_id = self.config_manager.get_active_viewport_on_load()
            self.config_manager.add_recent_protocol_id(protocol.id)

        stage = selection.stage
        print(f"[HANGING PROTOCOL] Applied {protocol.id} stage {stage.id} "
              f"({selection.matched_count} matched viewport(s))")
        self.viewport_grid.set_layout_from_assignments(
            stage.rows, stage.columns, assignments, stage.layout_type, active_viewport_id
        )
        self.event_bus.publish(PROTOCOL_CHANGED, {
            "protocol_id": protocol.id,
            "stage_id": stage.id,
            "stage_index": selection.stage_index,
            "study_instance_uid": study_uid,
        })
        return selection

    # Stage navigation

    def set_stage(self, stage: Union[int, str]) -> StageSelection:
        """
        Activate a stage of the active protocol by index or id.

        Raises:
            MatchFailure: if nothing is active, the stage is unknown or not activatable
        """
        if self.active_protocol is None or self.active_study_uid is None:
            raise MatchFailure("No active hanging protocol")
        stage_index = stage
        if isinstance(stage, str):
            stage_index = self.active_protocol.get_stage_index(stage)
            if stage_index is None:
                raise MatchFailure(f"Protocol {self.active_protocol.id} has no stage {stage}",
                                   protocol_id=self.active_protocol.id)
        return self._apply(self.active_protocol, self.active_study_uid, stage_index)

    def _step_stage(self, step: int) -> Optional[StageSelection]:
        if self.active_selection is None:
            return None
        protocol = self.active_protocol
        rankings = compute_rankings(protocol, self._candidates(protocol, self.active_study_uid),
                                    self._custom_attributes)
        index = self.active_selection.stage_index + step
        while 0 <= index < len(protocol.stages):
            stage = protocol.stages[index]
            if count_matched_viewports(stage, rankings) >= stage.min_viewports_matched:
                return self._apply(protocol, self.active_study_uid, index)
            index += step
        debug_log("hanging_protocol_service._step_stage", "no activatable stage",
                  {"protocol": protocol.id, "from": self.active_selection.stage_index, "step": step})
        return None

    def next_stage(self) -> Optional[StageSelection]:
        """Move to the next activatable stage; None when there is none."""
        return self._step_stage(1)

    def previous_stage(self) -> Optional[StageSelection]:
        """Move to the previous activatable stage; None when there is none."""
        return self._step_stage(-1)

    def get_state(self) -> Dict[str, Any]:
        if self.active_selection is None:
            return {"protocol_id": None, "stage_id": None, "stage_index": None, "study_instance_uid": None}
        return {
            "protocol_id": self.active_protocol.id,
            "stage_id": self.active_selection.stage.id,
            "stage_index": self.active_selection.stage_index,
            "study_instance_uid": self.active_study_uid,
        }

    def reset(self) -> None:
        self.active_protocol = None
        self.active_study_uid = None
        self.active_selection = None
        self.active_assignments = []
