"""
Unit tests for the viewport grid assigner (core.viewport_grid_assigner).

Tests cover:
- One assignment per slot with stable, unique viewport ids
- Empty slots for unmatched views
- UnresolvedReference reporting without affecting siblings
- Option merging and inherited sync groups
- Padding and oversized stage definitions
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from core.errors import InvariantViolation, UnresolvedReference
from core.hanging_protocol import Protocol
from core.notification_service import NotificationService
from core.protocols.mn_grid import get_mn_grid_protocol
from core.stage_selector import select_stage, select_stage_at
from core.viewport_grid_assigner import (
    assign_viewports,
    get_viewport_id_for_slot,
    merge_viewport_options,
)
from hanging_fixtures import make_series


def _series(count):
    return [make_series(f"1.2.ds{i}", series_number=i + 1) for i in range(count)]


def _single_selector_protocol(stage_viewports, rows=1, columns=2, min_matched=1,
                              default_viewport=None, stage_default=None):
    stage = {
        "id": "stage",
        "stageActivation": {"enabled": {"minViewportsMatched": min_matched}},
        "viewportStructure": {"properties": {"rows": rows, "columns": columns}},
        "viewports": stage_viewports,
    }
    if stage_default is not None:
        stage["defaultViewport"] = stage_default
    data = {
        "id": "test-protocol",
        "displaySetSelectors": {
            "ct": {"seriesMatchingRules": [
                {"attribute": "Modality", "constraint": {"equals": "CT"}, "required": True}]},
        },
        "stages": [stage],
    }
    if default_viewport is not None:
        data["defaultViewport"] = default_viewport
    return Protocol.from_dict(data)


class TestMNGridAssignment(unittest.TestCase):
    """Assignments for the default grid protocol."""

    def setUp(self):
        self.protocol = get_mn_grid_protocol()

    def test_2x2_binds_ranked_series_in_slot_order(self):
        assignments = assign_viewports(select_stage(self.protocol, _series(4)))
        self.assertEqual(len(assignments), 4)
        self.assertEqual([a.slot for a in assignments], [0, 1, 2, 3])
        self.assertEqual([a.viewport_id for a in assignments],
                         ["default", "viewport-1", "viewport-2", "viewport-3"])
        self.assertEqual([a.display_set_instance_uids for a in assignments],
                         [["1.2.ds0"], ["1.2.ds1"], ["1.2.ds2"], ["1.2.ds3"]])

    def test_each_display_set_in_at_most_one_slot(self):
        assignments = assign_viewports(select_stage(self.protocol, _series(6)))
        uids = [uid for a in assignments for uid in a.display_set_instance_uids]
        self.assertEqual(len(uids), len(set(uids)))

    def test_only_marked_viewports_join_hydrateseg_group(self):
        assignments = assign_viewports(select_stage(self.protocol, _series(4)))
        memberships = [[g.type for g in a.viewport_options["sync_groups"]] for a in assignments]
        self.assertEqual(memberships, [["hydrateseg"], [], ["hydrateseg"], ["hydrateseg"]])
        self.assertEqual(assignments[0].viewport_options["sync_groups"][0].matching_rules, ["sameFOR"])
        for assignment in assignments:
            self.assertEqual(assignment.viewport_options["viewport_type"], "stack")
            self.assertTrue(assignment.viewport_options["allow_unmatched_view"])

    def test_smaller_stages_join_no_sync_group(self):
        assignments = assign_viewports(select_stage(self.protocol, _series(3)))
        self.assertEqual(len(assignments), 3)
        for assignment in assignments:
            self.assertEqual(assignment.viewport_options["sync_groups"], [])

    def test_assignment_is_idempotent(self):
        display_sets = _series(3)
        first = assign_viewports(select_stage(self.protocol, display_sets))
        second = assign_viewports(select_stage(self.protocol, display_sets))
        self.assertEqual([a.display_set_instance_uids for a in first],
                         [a.display_set_instance_uids for a in second])
        self.assertEqual([a.viewport_id for a in first], [a.viewport_id for a in second])

    def test_explicit_single_viewport_stage(self):
        assignments = assign_viewports(select_stage_at(self.protocol, 3, _series(2)))
        self.assertEqual(len(assignments), 1)
        self.assertEqual(assignments[0].display_set_instance_uids, ["1.2.ds0"])


class TestUnresolvedReferences(unittest.TestCase):
    """Slots whose reference is beyond the ranked list."""

    def test_allow_unmatched_gives_empty_slot_without_error(self):
        protocol = _single_selector_protocol([
            {"displaySets": [{"id": "ct"}]},
            {"viewportOptions": {"allowUnmatchedView": True},
             "displaySets": [{"id": "ct", "matchedDisplaySetsIndex": 1}]},
        ])
        notifications = NotificationService()
        assignments = assign_viewports(select_stage(protocol, _series(1)), notifications)
        self.assertEqual(assignments[0].display_set_instance_uids, ["1.2.ds0"])
        self.assertTrue(assignments[1].is_empty)
        self.assertIsNone(assignments[1].error)
        self.assertEqual(notifications.history, [])

    def test_disallowed_unmatched_reports_and_keeps_siblings(self):
        protocol = _single_selector_protocol([
            {"displaySets": [{"id": "ct"}]},
            {"displaySets": [{"id": "ct", "matchedDisplaySetsIndex": 3}]},
        ])
        notifications = NotificationService()
        assignments = assign_viewports(select_stage(protocol, _series(1)), notifications)
        self.assertEqual(assignments[0].display_set_instance_uids, ["1.2.ds0"])
        self.assertIsNone(assignments[0].error)
        self.assertTrue(assignments[1].is_empty)
        self.assertIsInstance(assignments[1].error, UnresolvedReference)
        self.assertEqual(assignments[1].error.viewport_id, "viewport-1")
        self.assertEqual(assignments[1].error.index, 3)
        self.assertEqual(len(notifications.history), 1)
        self.assertEqual(notifications.history[0]["type"], "error")

    def test_repeated_entry_is_not_shown_twice(self):
        protocol = _single_selector_protocol([
            {"displaySets": [{"id": "ct"}]},
            {"viewportOptions": {"allowUnmatchedView": True}, "displaySets": [{"id": "ct"}]},
        ])
        assignments = assign_viewports(select_stage(protocol, _series(2)))
        self.assertEqual(assignments[0].display_set_instance_uids, ["1.2.ds0"])
        self.assertTrue(assignments[1].is_empty)

    def test_last_match_index(self):
        protocol = _single_selector_protocol([
            {"displaySets": [{"id": "ct", "matchedDisplaySetsIndex": -1}]},
        ], columns=1)
        assignments = assign_viewports(select_stage(protocol, _series(3)))
        self.assertEqual(assignments[0].display_set_instance_uids, ["1.2.ds2"])


class TestStageShape(unittest.TestCase):
    """Padding and oversized stages."""

    def test_missing_slots_padded_from_protocol_default(self):
        protocol = _single_selector_protocol(
            [{"displaySets": [{"id": "ct"}]}],
            rows=1, columns=2,
            default_viewport={
                "viewportOptions": {"allowUnmatchedView": True, "toolGroupId": "mpr"},
                "displaySets": [{"id": "ct", "matchedDisplaySetsIndex": -1}],
            },
        )
        assignments = assign_viewports(select_stage(protocol, _series(3)))
        self.assertEqual(len(assignments), 2)
        self.assertEqual(assignments[1].display_set_instance_uids, ["1.2.ds2"])
        self.assertEqual(assignments[1].viewport_options["tool_group_id"], "mpr")

    def test_more_definitions_than_slots_is_invariant_violation(self):
        protocol = _single_selector_protocol(
            [{"displaySets": [{"id": "ct"}]}] * 3, rows=1, columns=2)
        with self.assertRaises(InvariantViolation):
            assign_viewports(select_stage(protocol, _series(3)))

    def test_option_layers(self):
        protocol = _single_selector_protocol(
            [{"viewportOptions": {"orientation": "axial"}, "displaySets": [{"id": "ct"}]}],
            columns=2,
            default_viewport={"viewportOptions": {"toolGroupId": "protocol", "viewportType": "volume",
                                                  "allowUnmatchedView": True}},
            stage_default={"viewportOptions": {"toolGroupId": "stage"}},
        )
        declared, padded = assign_viewports(select_stage(protocol, _series(1)))
        self.assertEqual(declared.viewport_options["tool_group_id"], "stage")
        self.assertEqual(declared.viewport_options["viewport_type"], "stack")
        self.assertEqual(declared.viewport_options["orientation"], "axial")
        self.assertEqual(declared.viewport_options["viewport_id"], "default")
        self.assertEqual(padded.viewport_options["tool_group_id"], "stage")
        self.assertEqual(padded.viewport_options["viewport_type"], "volume")

    def test_protocol_sync_groups_only_reach_padded_slots(self):
        protocol = _single_selector_protocol(
            [{"viewportOptions": {"allowUnmatchedView": True}, "displaySets": [{"id": "ct"}]}],
            columns=2,
            default_viewport={
                "viewportOptions": {"allowUnmatchedView": True,
                                    "syncGroups": [{"type": "hydrateseg", "id": "sameFORId"}]},
                "displaySets": [{"id": "ct", "matchedDisplaySetsIndex": -1}],
            },
        )
        declared, padded = assign_viewports(select_stage(protocol, _series(2)))
        self.assertEqual(declared.viewport_options["sync_groups"], [])
        self.assertEqual([g.type for g in padded.viewport_options["sync_groups"]], ["hydrateseg"])

    def test_explicit_viewport_id(self):
        protocol = _single_selector_protocol(
            [{"viewportOptions": {"viewportId": "ctAxial"}, "displaySets": [{"id": "ct"}]}], columns=1)
        self.assertEqual(assign_viewports(select_stage(protocol, _series(1)))[0].viewport_id, "ctAxial")


class TestHelpers(unittest.TestCase):

    def test_viewport_ids(self):
        self.assertEqual(get_viewport_id_for_slot(0), "default")
        self.assertEqual(get_viewport_id_for_slot(2), "viewport-2")

    def test_merge_does_not_alias_layers(self):
        layer = {"sync_groups": [{"type": "voi"}]}
        merged = merge_viewport_options(layer)
        merged["sync_groups"].append({"type": "cameraPosition"})
        self.assertEqual(len(layer["sync_groups"]), 1)
        self.assertFalse(merged["allow_unmatched_view"])


if __name__ == "__main__":
    unittest.main()
