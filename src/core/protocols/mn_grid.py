"""
MN Grid Hanging Protocol

Staged grid protocol: 2x2 when at least four series match, then 3x1, 2x1 and
1x1. The first, third and fourth 2x2 viewports (and any padded slot, through
the default viewport) join the segmentation hydration sync group, so a
hydrated segmentation appears in those of them sharing its frame of
reference. The other stages declare no sync groups.

Activated by protocol id "@ohif/mnGrid" (the default fallback protocol).

Inputs:
    - None (static configuration)

Outputs:
    - HYDRATE_SEG_SYNC_GROUP definition dict
    - MN_GRID_PROTOCOL dict and get_mn_grid_protocol() parsed Protocol

Requirements:
    - core.hanging_protocol for parsing
    - core.matching_rules for the built-in rule sets
"""

import copy

from core.hanging_protocol import Protocol
from core.matching_rules import series_with_images, study_with_images


HYDRATE_SEG_SYNC_GROUP = {
    "type": "hydrateseg",
    "id": "sameFORId",
    "source": True,
    "target": True,
    "options": {
        "matchingRules": ["sameFOR"],
    },
}


def _viewport(index=None, sync=False):
    viewport_options = {
        "toolGroupId": "default",
        "allowUnmatchedView": True,
    }
    if sync:
        viewport_options["syncGroups"] = [copy.deepcopy(HYDRATE_SEG_SYNC_GROUP)]
    display_set = {"id": "defaultDisplaySetId"}
    if index is not None:
        display_set["matchedDisplaySetsIndex"] = index
    return {"viewportOptions": viewport_options, "displaySets": [display_set]}


def _stage(name, min_matched, rows, columns, viewports):
    return {
        "id": name,
        "name": name,
        "stageActivation": {"enabled": {"minViewportsMatched": min_matched}},
        "viewportStructure": {
            "layoutType": "grid",
            "properties": {"rows": rows, "columns": columns},
        },
        "viewports": viewports,
    }


MN_GRID_PROTOCOL = {
    "id": "@ohif/mnGrid",
    "description": "Has various hanging protocol grid layouts",
    "name": "2x2",
    "protocolMatchingRules": study_with_images,
    "toolGroupIds": ["default"],
    "displaySetSelectors": {
        "defaultDisplaySetId": {
            "seriesMatchingRules": series_with_images,
        },
    },
    "defaultViewport": {
        "viewportOptions": {
            "viewportType": "stack",
            "toolGroupId": "default",
            "allowUnmatchedView": True,
            "syncGroups": [HYDRATE_SEG_SYNC_GROUP],
        },
        "displaySets": [
            {"id": "defaultDisplaySetId", "matchedDisplaySetsIndex": -1},
        ],
    },
    "stages": [
        _stage("2x2", 4, 2, 2, [
            _viewport(sync=True),
            _viewport(1),
            _viewport(2, sync=True),
            _viewport(3, sync=True),
        ]),
        _stage("3x1", 3, 1, 3, [_viewport(), _viewport(1), _viewport(2)]),
        _stage("2x1", 2, 1, 2, [_viewport(), _viewport(1)]),
        # Activated when only one viewable series exists
        _stage("1x1", 1, 1, 1, [_viewport()]),
    ],
    "numberOfPriorsReferenced": -1,
}


def get_mn_grid_protocol() -> Protocol:
    """Return a freshly parsed MN grid protocol."""
    return Protocol.from_dict(copy.deepcopy(MN_GRID_PROTOCOL))
