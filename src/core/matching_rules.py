"""
Matching Rule Evaluator

Scores a candidate (display set or study) against a list of matching rules.
Rules are tagged data, not code:

    {"id": "modality", "attribute": "Modality",
     "constraint": {"equals": {"value": "CT"}}, "weight": 2, "required": False}

One interpreter (evaluate_rules) handles every constraint name, so the same
rule set always yields the same score for the same candidate regardless of
rule order. A missing or unreadable attribute makes the rule unsatisfied
(contribution 0); it never raises.

Inputs:
    - Rule lists (MatchingRule or dicts in protocol JSON form)
    - Candidates exposing get_attribute(name), mappings, or plain objects

Outputs:
    - MatchResult: total score, required failure flag, per-rule outcomes
    - Validation messages for protocol authoring

Requirements:
    - typing for type hints
"""

import numbers
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from core.display_set import NON_IMAGE_MODALITIES


CONSTRAINT_NAMES = (
    "equals",
    "doesNotEqual",
    "contains",
    "doesNotContain",
    "startsWith",
    "endsWith",
    "greaterThan",
    "lessThan",
    "range",
    "oneOf",
    "notOneOf",
    "exists",
    "notNull",
)

CustomAttributes = Dict[str, Callable[[Any], Any]]


class MatchingRule:
    """A weighted predicate over one candidate attribute."""

    def __init__(self, attribute: str, constraint: Dict[str, Any], weight: float = 1,
                 required: bool = False, rule_id: Optional[str] = None):
        self.attribute = attribute
        self.constraint = dict(constraint or {})
        self.weight = weight
        self.required = required
        self.id = rule_id or attribute

    @classmethod
    def from_dict(cls, data: Union["MatchingRule", Mapping[str, Any]]) -> "MatchingRule":
        if isinstance(data, MatchingRule):
            return data
        return cls(
            attribute=data.get("attribute", ""),
            constraint=data.get("constraint", {}),
            weight=data.get("weight", 1),
            required=bool(data.get("required", False)),
            rule_id=data.get("id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "attribute": self.attribute,
            "constraint": dict(self.constraint),
            "weight": self.weight,
            "required": self.required,
        }

    def __repr__(self) -> str:
        return f"MatchingRule({self.id!r}, {self.attribute!r}, {self.constraint!r})"


class RuleOutcome:
    """Result of one rule against one candidate."""

    def __init__(self, rule: MatchingRule, satisfied: bool):
        self.rule_id = rule.id
        self.attribute = rule.attribute
        self.required = rule.required
        self.satisfied = satisfied
        self.contribution = rule.weight if satisfied else 0


class MatchResult:
    """
    Aggregated outcome of a rule set.

    score is the weighted sum of satisfied rules, or 0 when a required rule
    failed. matched is True when the candidate is usable at all.
    """

    def __init__(self, outcomes: List[RuleOutcome]):
        self.outcomes = outcomes
        self.required_failed = any(o.required and not o.satisfied for o in outcomes)
        self.raw_score = sum(o.contribution for o in outcomes)
        self.score = 0 if self.required_failed else self.raw_score

    @property
    def matched(self) -> bool:
        if self.required_failed:
            return False
        # An empty rule set accepts every candidate
        return not self.outcomes or self.score > 0

    def __repr__(self) -> str:
        return f"MatchResult(score={self.score}, required_failed={self.required_failed})"


def get_candidate_attribute(candidate: Any, attribute: str,
                            custom_attributes: Optional[CustomAttributes] = None) -> Any:
    """
    Read an attribute from a candidate.

    Order: registered custom attribute function, candidate.get_attribute(),
    mapping key, plain attribute. Any failure reads as None.
    """
    try:
        if custom_attributes and attribute in custom_attributes:
            return custom_attributes[attribute](candidate)
        if hasattr(candidate, "get_attribute"):
            return candidate.get_attribute(attribute)
        if isinstance(candidate, Mapping):
            return candidate.get(attribute)
        return getattr(candidate, attribute, None)
    except Exception:
        return None


def _unwrap(value: Any) -> Any:
    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_present(actual: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (str, list, tuple, dict)) and len(actual) == 0:
        return False
    return True


def _normalize(value: Any) -> Any:
    # pydicom MultiValue / tuples compare as lists
    if isinstance(value, numbers.Number):
        return value
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if value is not None and not isinstance(value, (str, int, float, bool, dict)):
        if hasattr(value, "__iter__") and not isinstance(value, bytes):
            return [_normalize(v) for v in value]
        return str(value)
    return value


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        if isinstance(expected, list):
            return any(str(e) in actual for e in expected)
        return str(expected) in actual
    if isinstance(actual, list):
        if isinstance(expected, list):
            return any(e in actual for e in expected)
        return expected in actual
    return False


def _check_constraint(name: str, expected: Any, actual: Any) -> bool:
    """Evaluate one named constraint. actual is already known to be present."""
    if name == "equals":
        return actual == expected
    if name == "doesNotEqual":
        return actual != expected
    if name == "contains":
        return _contains(actual, expected)
    if name == "doesNotContain":
        return not _contains(actual, expected)
    if name == "startsWith":
        return isinstance(actual, str) and actual.startswith(str(expected))
    if name == "endsWith":
        return isinstance(actual, str) and actual.endswith(str(expected))
    if name in ("greaterThan", "lessThan"):
        actual_num = _as_number(actual)
        expected_num = _as_number(expected)
        if actual_num is None or expected_num is None:
            return False
        return actual_num > expected_num if name == "greaterThan" else actual_num < expected_num
    if name == "range":
        if not isinstance(expected, list) or len(expected) != 2:
            return False
        actual_num = _as_number(actual)
        low, high = _as_number(expected[0]), _as_number(expected[1])
        if actual_num is None or low is None or high is None:
            return False
        return low <= actual_num <= high
    if name in ("oneOf", "notOneOf"):
        options = expected if isinstance(expected, list) else [expected]
        return (actual in options) if name == "oneOf" else (actual not in options)
    if name in ("exists", "notNull"):
        return True
    return False


def evaluate_rule(rule: MatchingRule, candidate: Any,
                  custom_attributes: Optional[CustomAttributes] = None) -> bool:
    """
    Evaluate a single rule. All constraints in the rule must hold.

    Returns:
        True if satisfied; False for missing attributes or unknown constraints
    """
    actual = _normalize(get_candidate_attribute(candidate, rule.attribute, custom_attributes))
    if not _is_present(actual):
        return False
    if not rule.constraint:
        return False
    for name, expected in rule.constraint.items():
        if name not in CONSTRAINT_NAMES:
            return False
        if not _check_constraint(name, _normalize(_unwrap(expected)), actual):
            return False
    return True


def evaluate_rules(rules: List[Union[MatchingRule, Mapping[str, Any]]], candidate: Any,
                   custom_attributes: Optional[CustomAttributes] = None) -> MatchResult:
    """
    Score a candidate against a rule set.

    Args:
        rules: MatchingRule objects or protocol-JSON dicts
        candidate: Display set, study, mapping or object
        custom_attributes: Optional {name: fn(candidate)} computed attributes

    Returns:
        MatchResult
    """
    outcomes = []
    for raw_rule in rules or []:
        rule = MatchingRule.from_dict(raw_rule)
        outcomes.append(RuleOutcome(rule, evaluate_rule(rule, candidate, custom_attributes)))
    return MatchResult(outcomes)


def validate_rule(rule: Union[MatchingRule, Mapping[str, Any]]) -> List[str]:
    """
    Check a rule for authoring mistakes.

    Returns:
        List of human-readable problems (empty when the rule is valid)
    """
    rule = MatchingRule.from_dict(rule)
    problems = []
    if not rule.attribute:
        problems.append(f"Rule {rule.id!r} has no attribute")
    if not rule.constraint:
        problems.append(f"Rule {rule.id!r} has no constraint")
    for name, expected in rule.constraint.items():
        if name not in CONSTRAINT_NAMES:
            problems.append(f"Rule {rule.id!r} uses unknown constraint {name!r}")
        elif name == "range":
            bounds = _unwrap(expected)
            if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
                problems.append(f"Rule {rule.id!r} range needs [min, max]")
    if _as_number(rule.weight) is None:
        problems.append(f"Rule {rule.id!r} weight is not numeric")
    return problems


# Built-in rule sets used by the default protocols

study_with_images = [
    {
        "id": "studyHasImages",
        "attribute": "numImages",
        "constraint": {"greaterThan": {"value": 0}},
        "weight": 1,
        "required": True,
    },
]

series_with_images = [
    {
        "id": "seriesHasImages",
        "attribute": "numImageFrames",
        "constraint": {"greaterThan": {"value": 0}},
        "weight": 1,
        "required": True,
    },
    {
        "id": "isImageModality",
        "attribute": "Modality",
        "constraint": {"notOneOf": {"value": list(NON_IMAGE_MODALITIES)}},
        "weight": 1,
        "required": True,
    },
]
