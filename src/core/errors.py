"""
Core Error Types

Error kinds raised and reported by the hanging-protocol and synchronization
core. Every failure is local to one viewport or one segmentation; callers
report it and keep the sibling viewports of the grid rendering.

Inputs:
    - Raised by stage selection, grid assignment, segmentation loading and
      viewport construction

Outputs:
    - Exception instances carrying the viewport/segmentation they concern

Requirements:
    - Standard library only
"""

from typing import Optional


class HangingCoreError(Exception):
    """Base class for all core errors."""

    title = "Viewer"

    def __init__(self, message: str, viewport_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.viewport_id = viewport_id


class MatchFailure(HangingCoreError):
    """No stage of a protocol meets its activation threshold. Recoverable: fall back to a default layout."""

    title = "Hanging Protocol"

    def __init__(self, message: str, protocol_id: Optional[str] = None):
        super().__init__(message)
        self.protocol_id = protocol_id


class UnresolvedReference(HangingCoreError):
    """A viewport definition points past its ranked match list without allowing an unmatched view."""

    title = "Hanging Protocol"

    def __init__(self, message: str, viewport_id: Optional[str] = None,
                 selector_id: Optional[str] = None, index: Optional[int] = None):
        super().__init__(message, viewport_id)
        self.selector_id = selector_id
        self.index = index


class DecodeFailure(HangingCoreError):
    """Segmentation binary decode failed. The segmentation stays unloaded and is not retried."""

    title = "Segmentation"

    def __init__(self, message: str, segmentation_id: Optional[str] = None):
        super().__init__(message)
        self.segmentation_id = segmentation_id


class InvariantViolation(HangingCoreError):
    """Structural invariant broken (e.g. several display sets where exactly one is required)."""

    title = "Viewport"
