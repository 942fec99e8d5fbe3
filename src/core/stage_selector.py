"""
Protocol / Stage Selector

Ranks display sets for every display-set selector of a protocol and picks
the first stage, in declared order, whose activation threshold is met.

A stage's matched count is the number of its viewport definitions whose
display-set references all resolve into the ranked lists (default index 0,
-1 for the last match). For a single-selector protocol this is the number
of matching series capped by the stage's viewport count, so a four-series
study activates a 2x2 stage with minViewportsMatched 4 and a three-series
study falls through to a 3x1 stage with minViewportsMatched 3.

Selection is pure: running it twice on unchanged display sets yields the
same stage and rankings.

Inputs:
    - Protocol
    - Candidate display sets (already filtered to eligible studies)

Outputs:
    - StageSelection (stage, stage index, rankings, matched counts)
    - MatchFailure when no stage qualifies

Requirements:
    - core.matching_rules for scoring
"""

from typing import Any, Dict, List, Optional, Sequence

from core.display_set import DisplaySet, Study
from core.errors import MatchFailure
from core.hanging_protocol import DisplaySetReference, Protocol, Stage
from core.matching_rules import CustomAttributes, evaluate_rules
from utils.debug_log import debug_log


class RankedMatch:
    """One display set in a selector's ranked list."""

    def __init__(self, display_set: DisplaySet, score: float, series_index: int):
        self.display_set = display_set
        self.score = score
        self.series_index = series_index

    @property
    def display_set_instance_uid(self) -> str:
        return self.display_set.display_set_instance_uid

    def __repr__(self) -> str:
        return f"RankedMatch({self.display_set_instance_uid!r}, score={self.score})"


class StageSelection:
    """Outcome of stage selection for one protocol."""

    def __init__(self, protocol: Protocol, stage_index: int, rankings: Dict[str, List[RankedMatch]],
                 matched_count: int):
        self.protocol = protocol
        self.stage_index = stage_index
        self.stage: Stage = protocol.stages[stage_index]
        self.rankings = rankings
        self.matched_count = matched_count

    @property
    def matched_selector_count(self) -> int:
        """How many selectors found at least one display set."""
        return sum(1 for ranked in self.rankings.values() if ranked)

    def __repr__(self) -> str:
        return f"StageSelection({self.protocol.id!r}, stage={self.stage.id!r}, matched={self.matched_count})"


def rank_display_sets(rules, display_sets: Sequence[DisplaySet],
                      custom_attributes: Optional[CustomAttributes] = None) -> List[RankedMatch]:
    """
    Rank display sets against one selector's rules.

    Candidates that fail a required rule, or score 0 against a non-empty rule
    set, are excluded. Order: descending score, ties by original series order.
    """
    ranked = []
    for series_index, display_set in enumerate(display_sets):
        result = evaluate_rules(rules, display_set, custom_attributes)
        if not result.matched:
            continue
        ranked.append(RankedMatch(display_set, result.score, series_index))
    ranked.sort(key=lambda m: (-m.score, m.series_index))
    return ranked


def compute_rankings(protocol: Protocol, display_sets: Sequence[DisplaySet],
                     custom_attributes: Optional[CustomAttributes] = None) -> Dict[str, List[RankedMatch]]:
    """Rank display sets for every selector of the protocol."""
    return {
        selector_id: rank_display_sets(rules, display_sets, custom_attributes)
        for selector_id, rules in protocol.display_set_selectors.items()
    }


def resolve_matched_index(index: int, ranked_length: int) -> Optional[int]:
    """
    Map a matchedDisplaySetsIndex onto a ranked list.

    Negative indices count from the end (-1 = last match).

    Returns:
        Concrete list position, or None when out of range
    """
    if index < 0:
        index = ranked_length + index
    if 0 <= index < ranked_length:
        return index
    return None


def reference_resolves(reference: DisplaySetReference, rankings: Dict[str, List[RankedMatch]]) -> bool:
    ranked = rankings.get(reference.selector_id, [])
    return resolve_matched_index(reference.index, len(ranked)) is not None


def count_matched_viewports(stage: Stage, rankings: Dict[str, List[RankedMatch]]) -> int:
    """Number of the stage's viewport definitions whose references all resolve."""
    matched = 0
    for definition in stage.viewports:
        if not definition.display_sets:
            continue
        if all(reference_resolves(ref, rankings) for ref in definition.display_sets):
            matched += 1
    return matched


def is_stage_activatable(stage: Stage, rankings: Dict[str, List[RankedMatch]]) -> bool:
    return count_matched_viewports(stage, rankings) >= stage.min_viewports_matched


def select_stage(protocol: Protocol, display_sets: Sequence[DisplaySet],
                 custom_attributes: Optional[CustomAttributes] = None,
                 rankings: Optional[Dict[str, List[RankedMatch]]] = None) -> StageSelection:
    """
    Choose the first activatable stage in declared order.

    Args:
        protocol: Protocol to evaluate
        display_sets: Eligible display sets in series order
        custom_attributes: Optional computed attributes for rules
        rankings: Precomputed rankings (recomputed when None)

    Returns:
        StageSelection

    Raises:
        MatchFailure: if no stage meets its threshold
    """
    if rankings is None:
        rankings = compute_rankings(protocol, display_sets, custom_attributes)
    for stage_index, stage in enumerate(protocol.stages):
        matched = count_matched_viewports(stage, rankings)
        debug_log("stage_selector.select_stage", "evaluated stage", {
            "protocol": protocol.id, "stage": stage.id,
            "matched": matched, "required": stage.min_viewports_matched,
        })
        if matched >= stage.min_viewports_matched:
            return StageSelection(protocol, stage_index, rankings, matched)
    raise MatchFailure(
        f"No stage of protocol {protocol.id} can be activated "
        f"({len(display_sets)} candidate display set(s))",
        protocol_id=protocol.id,
    )


def select_stage_at(protocol: Protocol, stage_index: int, display_sets: Sequence[DisplaySet],
                    custom_attributes: Optional[CustomAttributes] = None) -> StageSelection:
    """
    Select a specific stage, honouring its activation threshold.

    Raises:
        MatchFailure: if the index is invalid or the stage is not activatable
    """
    if not 0 <= stage_index < len(protocol.stages):
        raise MatchFailure(f"Protocol {protocol.id} has no stage {stage_index}", protocol_id=protocol.id)
    rankings = compute_rankings(protocol, display_sets, custom_attributes)
    stage = protocol.stages[stage_index]
    matched = count_matched_viewports(stage, rankings)
    if matched < stage.min_viewports_matched:
        raise MatchFailure(
            f"Stage {stage.id} of protocol {protocol.id} needs {stage.min_viewports_matched} "
            f"matched viewport(s), found {matched}",
            protocol_id=protocol.id,
        )
    return StageSelection(protocol, stage_index, rankings, matched)


def eligible_display_sets(protocol: Protocol, studies: Sequence[Study], current_study_uid: str,
                          priors_limit: int = -1) -> List[DisplaySet]:
    """
    Display sets a protocol may lay out: the current study first, then up to
    numberOfPriorsReferenced prior studies in load order (-1 = unlimited).

    Args:
        priors_limit: Session-wide cap; -1 leaves the protocol's value alone
    """
    allowed = protocol.number_of_priors_referenced
    if priors_limit >= 0:
        allowed = priors_limit if allowed < 0 else min(allowed, priors_limit)

    current = [s for s in studies if s.study_instance_uid == current_study_uid]
    priors = [s for s in studies if s.study_instance_uid != current_study_uid]
    if allowed >= 0:
        priors = priors[:allowed]

    result: List[DisplaySet] = []
    for study in current + priors:
        result.extend(study.display_sets)
    return result


def protocol_score(protocol: Protocol, study: Any,
                   custom_attributes: Optional[CustomAttributes] = None) -> Optional[float]:
    """
    Score a protocol against a study with its protocolMatchingRules.

    Returns:
        Score, or None when a required rule fails (protocol not applicable)
    """
    result = evaluate_rules(protocol.protocol_matching_rules, study, custom_attributes)
    if not result.matched:
        return None
    return result.score


def find_best_protocol(protocols: Sequence[Protocol], study: Any,
                       custom_attributes: Optional[CustomAttributes] = None) -> Optional[Protocol]:
    """
    Highest-scoring applicable protocol; ties keep registration order.

    Protocols without matching rules score 0 and only win when nothing else applies.
    """
    best = None
    best_score = None
    for protocol in protocols:
        score = protocol_score(protocol, study, custom_attributes)
        if score is None:
            continue
        if best_score is None or score > best_score:
            best, best_score = protocol, score
    return best
