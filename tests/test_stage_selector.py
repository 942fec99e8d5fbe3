"""
Unit tests for protocol stage selection (core.stage_selector).

Tests cover:
- MN grid stage choice by number of viewable series
- Ranking order and ties
- Idempotent selection
- Priors filtering and protocol scoring
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from core.display_set import Study
from core.errors import MatchFailure
from core.hanging_protocol import Protocol
from core.protocols.mn_grid import get_mn_grid_protocol
from core.stage_selector import (
    compute_rankings,
    count_matched_viewports,
    eligible_display_sets,
    find_best_protocol,
    protocol_score,
    rank_display_sets,
    resolve_matched_index,
    select_stage,
    select_stage_at,
)
from hanging_fixtures import make_segmentation, make_series


def _series(count, modality="CT"):
    return [make_series(f"1.2.ds{i}", modality=modality, series_number=i + 1) for i in range(count)]


class TestMNGridStages(unittest.TestCase):
    """Stage choice of the default grid protocol."""

    def setUp(self):
        self.protocol = get_mn_grid_protocol()

    def _stage_id(self, display_sets):
        return select_stage(self.protocol, display_sets).stage.id

    def test_four_series_activate_2x2(self):
        selection = select_stage(self.protocol, _series(4))
        self.assertEqual(selection.stage.id, "2x2")
        self.assertEqual(selection.stage_index, 0)
        self.assertEqual(selection.matched_count, 4)

    def test_more_series_still_2x2(self):
        self.assertEqual(self._stage_id(_series(5)), "2x2")

    def test_three_series_fall_through_to_3x1(self):
        self.assertEqual(self._stage_id(_series(3)), "3x1")

    def test_two_series_2x1(self):
        self.assertEqual(self._stage_id(_series(2)), "2x1")

    def test_single_series_1x1(self):
        self.assertEqual(self._stage_id(_series(1)), "1x1")

    def test_segmentations_do_not_count_as_series(self):
        display_sets = _series(3)
        display_sets.append(make_segmentation("1.2.seg", display_sets[0]))
        selection = select_stage(self.protocol, display_sets)
        self.assertEqual(selection.stage.id, "3x1")
        ranked_uids = [m.display_set_instance_uid for m in selection.rankings["defaultDisplaySetId"]]
        self.assertNotIn("1.2.seg", ranked_uids)

    def test_no_viewable_series_raises_match_failure(self):
        base = make_series("1.2.base")
        with self.assertRaises(MatchFailure) as ctx:
            select_stage(self.protocol, [make_segmentation("1.2.seg", base)])
        self.assertEqual(ctx.exception.protocol_id, "@ohif/mnGrid")

    def test_selection_is_idempotent(self):
        display_sets = _series(4)
        first = select_stage(self.protocol, display_sets)
        second = select_stage(self.protocol, display_sets)
        self.assertEqual(first.stage.id, second.stage.id)
        self.assertEqual(
            [m.display_set_instance_uid for m in first.rankings["defaultDisplaySetId"]],
            [m.display_set_instance_uid for m in second.rankings["defaultDisplaySetId"]],
        )

    def test_select_stage_at_honours_threshold(self):
        display_sets = _series(2)
        self.assertEqual(select_stage_at(self.protocol, 3, display_sets).stage.id, "1x1")
        with self.assertRaises(MatchFailure):
            select_stage_at(self.protocol, 0, display_sets)
        with self.assertRaises(MatchFailure):
            select_stage_at(self.protocol, 9, display_sets)


class TestRanking(unittest.TestCase):
    """Ranked lists per selector."""

    def setUp(self):
        self.rules = [
            {"attribute": "Modality", "constraint": {"equals": "CT"}, "weight": 1},
            {"attribute": "SeriesDescription", "constraint": {"contains": "POST"}, "weight": 5},
        ]

    def test_descending_score_ties_by_series_order(self):
        display_sets = [
            make_series("1.2.a", description="PRE"),
            make_series("1.2.b", description="POST"),
            make_series("1.2.c", description="PRE"),
            make_series("1.2.d", modality="MR", description="PRE"),
        ]
        ranked = rank_display_sets(self.rules, display_sets)
        self.assertEqual([m.display_set_instance_uid for m in ranked], ["1.2.b", "1.2.a", "1.2.c"])
        self.assertEqual([m.score for m in ranked], [6, 1, 1])

    def test_resolve_matched_index(self):
        self.assertEqual(resolve_matched_index(0, 3), 0)
        self.assertEqual(resolve_matched_index(-1, 3), 2)
        self.assertIsNone(resolve_matched_index(3, 3))
        self.assertIsNone(resolve_matched_index(-1, 0))

    def test_count_matched_viewports_caps_at_stage_size(self):
        protocol = get_mn_grid_protocol()
        rankings = compute_rankings(protocol, _series(6))
        self.assertEqual(count_matched_viewports(protocol.stages[0], rankings), 4)
        self.assertEqual(count_matched_viewports(protocol.stages[3], rankings), 1)


class TestMultiSelectorStages(unittest.TestCase):
    """First qualifying stage with two selectors."""

    def setUp(self):
        self.protocol = Protocol.from_dict({
            "id": "ctmr",
            "displaySetSelectors": {
                "ct": {"seriesMatchingRules": [
                    {"attribute": "Modality", "constraint": {"equals": "CT"}, "required": True}]},
                "mr": {"seriesMatchingRules": [
                    {"attribute": "Modality", "constraint": {"equals": "MR"}, "required": True}]},
            },
            "stages": [
                {"id": "side-by-side",
                 "stageActivation": {"enabled": {"minViewportsMatched": 2}},
                 "viewportStructure": {"properties": {"rows": 1, "columns": 2}},
                 "viewports": [{"displaySets": [{"id": "ct"}]}, {"displaySets": [{"id": "mr"}]}]},
                {"id": "ct-only",
                 "stageActivation": {"enabled": {"minViewportsMatched": 1}},
                 "viewports": [{"displaySets": [{"id": "ct"}]}]},
            ],
        })

    def test_both_modalities_use_first_stage(self):
        display_sets = [make_series("1.2.ct"), make_series("1.2.mr", modality="MR")]
        selection = select_stage(self.protocol, display_sets)
        self.assertEqual(selection.stage.id, "side-by-side")
        self.assertEqual(selection.matched_selector_count, 2)

    def test_ct_only_falls_to_second_stage(self):
        selection = select_stage(self.protocol, [make_series("1.2.ct")])
        self.assertEqual(selection.stage.id, "ct-only")
        self.assertEqual(selection.matched_selector_count, 1)

    def test_precomputed_rankings_are_used(self):
        display_sets = [make_series("1.2.ct"), make_series("1.2.mr", modality="MR")]
        rankings = compute_rankings(self.protocol, display_sets)
        rankings["mr"] = []
        selection = select_stage(self.protocol, display_sets, rankings=rankings)
        self.assertEqual(selection.stage.id, "ct-only")


class TestEligibleDisplaySets(unittest.TestCase):
    """Current study plus limited priors."""

    def setUp(self):
        self.current = Study("1.2.current", [make_series("1.2.c1", study_uid="1.2.current")])
        self.prior_a = Study("1.2.prior.a", [make_series("1.2.p1", study_uid="1.2.prior.a")])
        self.prior_b = Study("1.2.prior.b", [make_series("1.2.p2", study_uid="1.2.prior.b")])
        self.studies = [self.prior_a, self.current, self.prior_b]

    def _uids(self, protocol, limit=-1):
        return [ds.display_set_instance_uid
                for ds in eligible_display_sets(protocol, self.studies, "1.2.current", limit)]

    def test_current_study_first_then_priors_unlimited(self):
        protocol = get_mn_grid_protocol()
        self.assertEqual(self._uids(protocol), ["1.2.c1", "1.2.p1", "1.2.p2"])

    def test_session_limit_caps_priors(self):
        protocol = get_mn_grid_protocol()
        self.assertEqual(self._uids(protocol, 1), ["1.2.c1", "1.2.p1"])
        self.assertEqual(self._uids(protocol, 0), ["1.2.c1"])

    def test_protocol_without_priors(self):
        protocol = Protocol.from_dict({"id": "current-only", "stages": []})
        self.assertEqual(self._uids(protocol), ["1.2.c1"])


class TestProtocolScoring(unittest.TestCase):
    """protocolMatchingRules scoring."""

    def setUp(self):
        self.study = Study("1.2.study", [make_series("1.2.ct"), make_series("1.2.mr", modality="MR")])
        self.mn_grid = get_mn_grid_protocol()
        self.ct_protocol = Protocol.from_dict({
            "id": "ct-protocol",
            "protocolMatchingRules": [
                {"attribute": "ModalitiesInStudy", "constraint": {"contains": "CT"}, "weight": 5},
            ],
            "stages": [],
        })
        self.pet_protocol = Protocol.from_dict({
            "id": "pet-protocol",
            "protocolMatchingRules": [
                {"attribute": "ModalitiesInStudy", "constraint": {"contains": "PT"}, "required": True},
            ],
            "stages": [],
        })

    def test_scores(self):
        self.assertEqual(protocol_score(self.ct_protocol, self.study), 5)
        self.assertEqual(protocol_score(self.mn_grid, self.study), 1)
        self.assertIsNone(protocol_score(self.pet_protocol, self.study))

    def test_highest_score_wins(self):
        best = find_best_protocol([self.mn_grid, self.pet_protocol, self.ct_protocol], self.study)
        self.assertIs(best, self.ct_protocol)

    def test_ties_keep_registration_order(self):
        other = get_mn_grid_protocol()
        best = find_best_protocol([self.mn_grid, other], self.study)
        self.assertIs(best, self.mn_grid)

    def test_nothing_applicable(self):
        self.assertIsNone(find_best_protocol([self.pet_protocol], self.study))


if __name__ == "__main__":
    unittest.main()
