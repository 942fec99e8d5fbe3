"""
Display Set Service

Session registry of display sets, grouped into studies in load order.
Removing display sets publishes DISPLAY_SETS_REMOVED so viewports and
segmentation controllers can tear down.

Inputs:
    - Display sets from display_set_factory (or collaborators)
    - Removal requests

Outputs:
    - Lookups by display set UID and by study
    - DISPLAY_SETS_ADDED / DISPLAY_SETS_REMOVED events

Requirements:
    - core.event_bus for event publication
"""

from typing import Dict, List, Optional

from core.display_set import DisplaySet, Study
from core.event_bus import DISPLAY_SETS_ADDED, DISPLAY_SETS_REMOVED, EventBus


class DisplaySetService:
    """Holds the display sets of a viewer session."""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._display_sets: Dict[str, DisplaySet] = {}
        self._studies: Dict[str, Study] = {}
        self._study_order: List[str] = []

    def add_display_sets(self, display_sets: List[DisplaySet]) -> List[DisplaySet]:
        """
        Register display sets. Already-registered UIDs are ignored.

        Returns:
            The display sets that were newly added
        """
        added = []
        for display_set in display_sets:
            uid = display_set.display_set_instance_uid
            if uid in self._display_sets:
                continue
            self._display_sets[uid] = display_set
            study_uid = display_set.study_instance_uid
            if study_uid not in self._studies:
                self._studies[study_uid] = Study(study_uid)
                self._study_order.append(study_uid)
            self._studies[study_uid].add_display_set(display_set)
            added.append(display_set)
        if added:
            self.event_bus.publish(DISPLAY_SETS_ADDED, {
                "display_set_instance_uids": [ds.display_set_instance_uid for ds in added],
            })
        return added

    def get_display_set_by_uid(self, display_set_instance_uid: Optional[str]) -> Optional[DisplaySet]:
        if display_set_instance_uid is None:
            return None
        return self._display_sets.get(display_set_instance_uid)

    def get_active_display_sets(self) -> List[DisplaySet]:
        """All display sets, in study load order then series order."""
        result = []
        for study_uid in self._study_order:
            result.extend(self._studies[study_uid].display_sets)
        return result

    def get_study(self, study_instance_uid: str) -> Optional[Study]:
        return self._studies.get(study_instance_uid)

    def get_study_uids(self) -> List[str]:
        return list(self._study_order)

    def get_display_sets_for_study(self, study_instance_uid: str) -> List[DisplaySet]:
        study = self._studies.get(study_instance_uid)
        return list(study.display_sets) if study else []

    def get_display_sets_for_series(self, series_instance_uid: str) -> List[DisplaySet]:
        return [ds for ds in self.get_active_display_sets() if ds.series_instance_uid == series_instance_uid]

    def get_display_sets_referencing(self, display_set_instance_uid: str) -> List[DisplaySet]:
        """Display sets (overlays) whose base reference is the given UID."""
        return [ds for ds in self.get_active_display_sets()
                if ds.referenced_display_set_instance_uid == display_set_instance_uid]

    def remove_display_sets(self, display_set_instance_uids: List[str]) -> List[str]:
        """
        Remove display sets and publish DISPLAY_SETS_REMOVED.

        Returns:
            The UIDs that were actually removed
        """
        removed = []
        for uid in display_set_instance_uids:
            display_set = self._display_sets.pop(uid, None)
            if display_set is None:
                continue
            study = self._studies.get(display_set.study_instance_uid)
            if study is not None:
                study.remove_display_set(uid)
            removed.append(uid)
        if removed:
            self.event_bus.publish(DISPLAY_SETS_REMOVED, {"display_set_instance_uids": removed})
        return removed

    def clear(self) -> None:
        self._display_sets.clear()
        self._studies.clear()
        self._study_order.clear()
