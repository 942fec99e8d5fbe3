"""
Hanging Protocol Model

Declarative protocol definitions: a Protocol holds display-set selectors
(named matching-rule sets), a default viewport and an ordered list of Stages;
each Stage declares an activation threshold, a grid shape and its viewport
definitions. Definitions are parsed from the camelCase dict form used in
protocol configuration:

    {"id": "...", "displaySetSelectors": {...}, "defaultViewport": {...},
     "stages": [{"stageActivation": {"enabled": {"minViewportsMatched": 4}},
                 "viewportStructure": {"layoutType": "grid",
                                       "properties": {"rows": 2, "columns": 2}},
                 "viewports": [...]}],
     "numberOfPriorsReferenced": -1}

Viewport options are normalized to snake_case dicts so they can be merged
layer by layer (protocol default < stage default < viewport definition).

Inputs:
    - Protocol configuration dicts

Outputs:
    - Protocol / Stage / ViewportDefinition / SyncGroupDefinition objects

Requirements:
    - core.matching_rules for selector rules
"""

from typing import Any, Dict, List, Mapping, Optional

from core.matching_rules import MatchingRule


# camelCase protocol keys -> normalized viewport option keys
_VIEWPORT_OPTION_KEYS = {
    "viewportType": "viewport_type",
    "toolGroupId": "tool_group_id",
    "allowUnmatchedView": "allow_unmatched_view",
    "syncGroups": "sync_groups",
    "viewportId": "viewport_id",
    "orientation": "orientation",
    "background": "background",
    "initialImageOptions": "initial_image_options",
}


class SyncGroupDefinition:
    """Membership of a viewport in a sync group."""

    def __init__(self, group_id: str, group_type: str, source: bool = True, target: bool = True,
                 options: Optional[Dict[str, Any]] = None):
        self.id = group_id
        self.type = group_type
        self.source = source
        self.target = target
        self.options: Dict[str, Any] = dict(options or {})

    @classmethod
    def from_dict(cls, data: Any) -> "SyncGroupDefinition":
        if isinstance(data, SyncGroupDefinition):
            return data
        if isinstance(data, str):
            # Shorthand: a bare type string joins the group of the same name
            return cls(data, data)
        return cls(
            group_id=data.get("id", data.get("type", "")),
            group_type=data.get("type", ""),
            source=bool(data.get("source", True)),
            target=bool(data.get("target", True)),
            options=data.get("options"),
        )

    @property
    def key(self) -> str:
        return f"{self.type}:{self.id}"

    @property
    def matching_rules(self) -> List[str]:
        return list(self.options.get("matchingRules", []))

    def __repr__(self) -> str:
        return f"SyncGroupDefinition({self.type!r}, {self.id!r}, source={self.source}, target={self.target})"


def normalize_viewport_options(raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Convert protocol viewportOptions to a snake_case dict.

    Unknown keys are kept as they are; syncGroups become SyncGroupDefinition lists.
    """
    options: Dict[str, Any] = {}
    for key, value in (raw or {}).items():
        normalized = _VIEWPORT_OPTION_KEYS.get(key, key)
        if normalized == "sync_groups":
            value = [SyncGroupDefinition.from_dict(g) for g in (value or [])]
        options[normalized] = value
    return options


class DisplaySetReference:
    """Which selector supplies a viewport, and which entry of its ranked list."""

    def __init__(self, selector_id: str, matched_display_sets_index: Optional[int] = None,
                 options: Optional[Dict[str, Any]] = None):
        self.selector_id = selector_id
        # None -> default (0); -1 -> last match
        self.matched_display_sets_index = matched_display_sets_index
        self.options: Dict[str, Any] = dict(options or {})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DisplaySetReference":
        return cls(
            selector_id=data.get("id", ""),
            matched_display_sets_index=data.get("matchedDisplaySetsIndex"),
            options=data.get("options"),
        )

    @property
    def index(self) -> int:
        if self.matched_display_sets_index is None:
            return 0
        return int(self.matched_display_sets_index)


class ViewportDefinition:
    """One viewport of a stage (or the protocol default viewport)."""

    def __init__(self, viewport_options: Optional[Dict[str, Any]] = None,
                 display_sets: Optional[List[DisplaySetReference]] = None):
        self.viewport_options: Dict[str, Any] = dict(viewport_options or {})
        self.display_sets: List[DisplaySetReference] = list(display_sets or [])

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ViewportDefinition":
        data = data or {}
        return cls(
            viewport_options=normalize_viewport_options(data.get("viewportOptions")),
            display_sets=[DisplaySetReference.from_dict(d) for d in data.get("displaySets", [])],
        )

    @property
    def allow_unmatched_view(self) -> Optional[bool]:
        return self.viewport_options.get("allow_unmatched_view")


class Stage:
    """A candidate grid layout with its activation threshold."""

    def __init__(self, stage_id: str, name: str = "", min_viewports_matched: int = 0,
                 layout_type: str = "grid", rows: int = 1, columns: int = 1,
                 viewports: Optional[List[ViewportDefinition]] = None,
                 default_viewport: Optional[ViewportDefinition] = None,
                 layout_properties: Optional[Dict[str, Any]] = None):
        self.id = stage_id
        self.name = name or stage_id
        self.min_viewports_matched = min_viewports_matched
        self.layout_type = layout_type
        self.rows = rows
        self.columns = columns
        self.viewports: List[ViewportDefinition] = list(viewports or [])
        self.default_viewport = default_viewport
        self.layout_properties: Dict[str, Any] = dict(layout_properties or {})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], position: int = 0) -> "Stage":
        activation = (data.get("stageActivation") or {}).get("enabled") or {}
        structure = data.get("viewportStructure") or {}
        properties = dict(structure.get("properties") or {})
        default_viewport = None
        if data.get("defaultViewport"):
            default_viewport = ViewportDefinition.from_dict(data["defaultViewport"])
        name = data.get("name", "")
        return cls(
            stage_id=data.get("id") or name or f"stage-{position}",
            name=name,
            min_viewports_matched=int(activation.get("minViewportsMatched", 0) or 0),
            layout_type=structure.get("layoutType", "grid"),
            rows=int(properties.get("rows", 1)),
            columns=int(properties.get("columns", 1)),
            viewports=[ViewportDefinition.from_dict(v) for v in data.get("viewports", [])],
            default_viewport=default_viewport,
            layout_properties=properties,
        )

    @property
    def slot_count(self) -> int:
        """Number of viewport slots the grid shape declares."""
        return self.rows * self.columns

    def __repr__(self) -> str:
        return f"Stage({self.id!r}, {self.rows}x{self.columns}, min={self.min_viewports_matched})"


class Protocol:
    """A hanging protocol."""

    def __init__(self, protocol_id: str, stages: List[Stage],
                 display_set_selectors: Optional[Dict[str, List[MatchingRule]]] = None,
                 default_viewport: Optional[ViewportDefinition] = None,
                 number_of_priors_referenced: int = 0,
                 protocol_matching_rules: Optional[List[MatchingRule]] = None,
                 name: str = "", description: str = "",
                 tool_group_ids: Optional[List[str]] = None):
        self.id = protocol_id
        self.name = name or protocol_id
        self.description = description
        self.stages = list(stages)
        self.display_set_selectors: Dict[str, List[MatchingRule]] = dict(display_set_selectors or {})
        self.default_viewport = default_viewport or ViewportDefinition()
        self.number_of_priors_referenced = number_of_priors_referenced
        self.protocol_matching_rules: List[MatchingRule] = list(protocol_matching_rules or [])
        self.tool_group_ids: List[str] = list(tool_group_ids or [])

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Protocol":
        selectors = {}
        for selector_id, selector in (data.get("displaySetSelectors") or {}).items():
            selectors[selector_id] = [
                MatchingRule.from_dict(r) for r in selector.get("seriesMatchingRules", [])
            ]
        return cls(
            protocol_id=data["id"],
            stages=[Stage.from_dict(s, i) for i, s in enumerate(data.get("stages", []))],
            display_set_selectors=selectors,
            default_viewport=ViewportDefinition.from_dict(data.get("defaultViewport")),
            number_of_priors_referenced=int(data.get("numberOfPriorsReferenced", 0)),
            protocol_matching_rules=[MatchingRule.from_dict(r) for r in data.get("protocolMatchingRules", [])],
            name=data.get("name", ""),
            description=data.get("description", ""),
            tool_group_ids=data.get("toolGroupIds"),
        )

    def get_stage_index(self, stage_id: str) -> Optional[int]:
        for i, stage in enumerate(self.stages):
            if stage.id == stage_id:
                return i
        return None

    def __repr__(self) -> str:
        return f"Protocol({self.id!r}, stages={[s.id for s in self.stages]})"
