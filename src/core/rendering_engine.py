"""
Rendering Engine Interface

Boundary to the external imaging/rendering engine. The core never renders;
it reads and writes viewport presentation and asks for camera moves through
this interface. Hosting applications supply a concrete engine; tests and
headless sessions use HeadlessRenderingEngine, which keeps the state in
memory.

Inputs:
    - Viewport presentation writes and camera requests from the core

Outputs:
    - Current viewport presentation

Requirements:
    - core.presentation_state_store for the presentation type
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from core.presentation_state_store import PositionPresentation


class RenderingEngine(ABC):
    """Operations the core needs from the rendering collaborator."""

    @abstractmethod
    def get_viewport_presentation(self, viewport_id: str) -> Optional[PositionPresentation]:
        """Current camera / window level of a viewport, or None if it has none yet."""

    @abstractmethod
    def set_viewport_presentation(self, viewport_id: str, presentation: PositionPresentation) -> None:
        """Apply a camera / window level to a viewport."""

    @abstractmethod
    def jump_to_point(self, viewport_id: str, point: Sequence[float]) -> None:
        """Re-center a viewport's camera on a point (image index space)."""


class HeadlessRenderingEngine(RenderingEngine):
    """In-memory engine: records presentations and camera jumps."""

    def __init__(self):
        self.presentations: Dict[str, PositionPresentation] = {}
        self.jumps: List[Tuple[str, Tuple[float, ...]]] = []

    def get_viewport_presentation(self, viewport_id: str) -> Optional[PositionPresentation]:
        presentation = self.presentations.get(viewport_id)
        return presentation.copy() if presentation is not None else None

    def set_viewport_presentation(self, viewport_id: str, presentation: PositionPresentation) -> None:
        self.presentations[viewport_id] = presentation.copy()

    def jump_to_point(self, viewport_id: str, point: Sequence[float]) -> None:
        self.jumps.append((viewport_id, tuple(float(v) for v in point)))

    def remove_viewport(self, viewport_id: str) -> None:
        self.presentations.pop(viewport_id, None)
