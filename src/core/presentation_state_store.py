"""
Presentation State Store

Caches per-content viewport state so it survives layout changes: position
presentation (camera, window/level) and segmentation presentation (which
segmentation representations are shown). Keys are presentation ids computed
from the viewport role and the display sets shown, never from the slot index,
so moving content to another slot keeps its last-seen state.

Reads never create entries: get() on a missing key returns None, which means
"use defaults". clear() is the only bulk mutation and is called on session
teardown.

Inputs:
    - set(key, state) from commands (storePresentation and friends)

Outputs:
    - Stored PositionPresentation / list of SegmentationRepresentation

Requirements:
    - typing for type hints
"""

import copy
from typing import Any, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar


POSITION_PRESENTATION = "positionPresentation"
SEGMENTATION_PRESENTATION = "segmentationPresentation"

LABELMAP = "Labelmap"
CONTOUR = "Contour"

T = TypeVar("T")


def get_presentation_id(kind: str, viewport_options: Optional[Dict[str, Any]],
                        display_set_uids: Iterable[str]) -> Optional[str]:
    """
    Stable presentation key for a viewport's content.

    Args:
        kind: POSITION_PRESENTATION or SEGMENTATION_PRESENTATION
        viewport_options: Merged viewport options (viewport_type, orientation)
        display_set_uids: Display sets shown in the viewport

    Returns:
        Key string, or None for an empty viewport
    """
    uids = sorted(uid for uid in display_set_uids if uid)
    if not uids:
        return None
    options = viewport_options or {}
    viewport_type = options.get("viewport_type") or "stack"
    orientation = options.get("orientation") or ""
    return "&".join([kind, viewport_type, orientation] + uids)


class PositionPresentation:
    """Camera and window/level of a viewport."""

    def __init__(self, view_reference: Optional[Dict[str, Any]] = None,
                 camera: Optional[Dict[str, Any]] = None,
                 window_center: Optional[float] = None, window_width: Optional[float] = None,
                 invert: bool = False):
        # view_reference: {"display_set_instance_uid": ..., "image_id": ...}
        self.view_reference = dict(view_reference or {})
        self.camera = dict(camera or {})
        self.window_center = window_center
        self.window_width = window_width
        self.invert = invert

    def copy(self) -> "PositionPresentation":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "view_reference": dict(self.view_reference),
            "camera": dict(self.camera),
            "window_center": self.window_center,
            "window_width": self.window_width,
            "invert": self.invert,
        }

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PositionPresentation) and self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"PositionPresentation({self.view_reference!r}, wl=({self.window_center}, {self.window_width}))"


class SegmentationRepresentation:
    """One segmentation shown in a viewport."""

    def __init__(self, segmentation_id: str, representation_type: str = LABELMAP, visible: bool = True):
        self.segmentation_id = segmentation_id
        self.type = representation_type
        self.visible = visible

    def to_dict(self) -> Dict[str, Any]:
        return {"segmentation_id": self.segmentation_id, "type": self.type, "visible": self.visible}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SegmentationRepresentation) and self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"SegmentationRepresentation({self.segmentation_id!r}, {self.type})"


class PresentationStateStore(Generic[T]):
    """
    Keyed state container with explicit writes.

    Features:
    - Constructor-provided initial state
    - get() never creates entries
    - clear() for session teardown
    """

    def __init__(self, name: str, initial_state: Optional[Dict[str, T]] = None):
        self.name = name
        self._state: Dict[str, T] = dict(initial_state or {})

    def get(self, key: Optional[str]) -> Optional[T]:
        """Stored state, or None ("no override")."""
        if key is None:
            return None
        return self._state.get(key)

    def set(self, key: str, state: T) -> None:
        """Store (overwrite) the state for a key."""
        if not key:
            raise ValueError(f"{self.name}: presentation key must not be empty")
        self._state[key] = state

    def has(self, key: Optional[str]) -> bool:
        return key is not None and key in self._state

    def keys(self) -> List[str]:
        return list(self._state.keys())

    def items(self) -> List[Tuple[str, T]]:
        return list(self._state.items())

    def clear(self) -> None:
        self._state.clear()

    def __len__(self) -> int:
        return len(self._state)

    def __contains__(self, key: object) -> bool:
        return key in self._state


class PresentationStores:
    """The two independent stores of a viewer session."""

    def __init__(self, position_initial: Optional[Dict[str, PositionPresentation]] = None,
                 segmentation_initial: Optional[Dict[str, List[SegmentationRepresentation]]] = None):
        self.position: PresentationStateStore[PositionPresentation] = PresentationStateStore(
            POSITION_PRESENTATION, position_initial
        )
        self.segmentation: PresentationStateStore[List[SegmentationRepresentation]] = PresentationStateStore(
            SEGMENTATION_PRESENTATION, segmentation_initial
        )

    def clear(self) -> None:
        self.position.clear()
        self.segmentation.clear()
