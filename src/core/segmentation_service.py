"""
Segmentation Service

Owns the decoded segmentations of a session and which viewports show them
(segmentation representations). Decoding is delegated to a loader
collaborator returning a concurrent.futures.Future; the service resolves its
own Future once the segmentation is registered, and publishes
SEGMENT_LOADING_COMPLETE progress followed by SEGMENTATION_LOADING_COMPLETE
(or SEGMENTATION_LOADING_FAILED).

A viewport shows at most one segmentation: adding a representation of
another segmentation replaces the previous one.

Removing a segmentation display set, or the base display set it references,
removes the segmentation and its representations from every viewport.

Inputs:
    - SegmentationDisplaySet objects to load
    - Representation changes from hydration and sync
    - DISPLAY_SETS_REMOVED events

Outputs:
    - Segmentation objects with segment maps and centroids
    - SEGMENTATION_* events
    - Camera jumps through the rendering engine

Requirements:
    - numpy for centroid computation
    - core.segmentation_decoder for the default loader
"""

from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from core.display_set import Segment, SegmentationDisplaySet
from core.display_set_service import DisplaySetService
from core.errors import DecodeFailure
from core.event_bus import (
    DISPLAY_SETS_REMOVED,
    SEGMENT_LOADING_COMPLETE,
    SEGMENTATION_LOADING_COMPLETE,
    SEGMENTATION_LOADING_FAILED,
    SEGMENTATION_REMOVED,
    SEGMENTATION_REPRESENTATION_MODIFIED,
    EventBus,
)
from core.presentation_state_store import LABELMAP, SegmentationRepresentation
from core.rendering_engine import RenderingEngine
from core.segmentation_decoder import DecodedSegmentation, compute_centroids, decode_segmentation
from utils.debug_log import debug_log


SegmentationLoader = Callable[[SegmentationDisplaySet], "Future[DecodedSegmentation]"]


def decode_immediately(display_set: SegmentationDisplaySet) -> "Future[DecodedSegmentation]":
    """Default loader: decode on the calling thread and return a completed Future."""
    future: "Future[DecodedSegmentation]" = Future()
    try:
        if display_set.instance is None:
            raise DecodeFailure(
                f"Segmentation {display_set.display_set_instance_uid} has no instance data",
                segmentation_id=display_set.display_set_instance_uid,
            )
        future.set_result(decode_segmentation(display_set.instance))
    except DecodeFailure as e:
        future.set_exception(e)
    return future


class Segmentation:
    """A decoded segmentation and its segment map."""

    def __init__(self, segmentation_id: str, display_set: SegmentationDisplaySet,
                 segments: Optional[Dict[int, Segment]] = None,
                 labelmap: Optional[np.ndarray] = None,
                 centroids: Optional[Dict[int, Tuple[float, ...]]] = None):
        self.id = segmentation_id
        self.display_set = display_set
        self.label = display_set.series_description or segmentation_id
        self.segments: Dict[int, Segment] = dict(segments if segments is not None else display_set.segments)
        self.labelmap = labelmap
        self.centroids: Dict[int, Tuple[float, ...]] = dict(centroids or {})
        self.active_segment_index = min(self.segments) if self.segments else None

    @property
    def frame_of_reference_uid(self) -> Optional[str]:
        return self.display_set.frame_of_reference_uid

    @property
    def referenced_display_set_instance_uid(self) -> Optional[str]:
        return self.display_set.referenced_display_set_instance_uid

    @property
    def num_segments(self) -> int:
        return len(self.segments)

    def get_segment(self, segment_index: int) -> Optional[Segment]:
        return self.segments.get(segment_index)

    def get_centroid(self, segment_index: int) -> Optional[Tuple[float, ...]]:
        if segment_index not in self.centroids and self.labelmap is not None:
            self.centroids.update(compute_centroids(self.labelmap))
        return self.centroids.get(segment_index)

    def __repr__(self) -> str:
        return f"Segmentation({self.id!r}, segments={self.num_segments})"


class SegmentationService:
    """
    Session segmentations and per-viewport representations.

    Features:
    - Future-based loading with de-duplicated in-flight requests
    - Single-segmentation-per-viewport representations
    - Segment editing (active, visibility, lock, color, label, removal)
    - Cleanup on DISPLAY_SETS_REMOVED
    """

    def __init__(self, event_bus: EventBus, display_set_service: DisplaySetService,
                 rendering_engine: Optional[RenderingEngine] = None,
                 loader: Optional[SegmentationLoader] = None):
        """
        Initialize the service.

        Args:
            event_bus: Session bus
            display_set_service: Display-set registry
            rendering_engine: Receives jump_to_point for segment navigation
            loader: Decode collaborator; defaults to decode_immediately
        """
        self.event_bus = event_bus
        self.display_set_service = display_set_service
        self.rendering_engine = rendering_engine
        self.loader = loader or decode_immediately
        self._segmentations: Dict[str, Segmentation] = {}
        self._representations: Dict[str, List[SegmentationRepresentation]] = {}
        self._pending: Dict[str, Tuple[SegmentationDisplaySet, Future]] = {}
        self._disposed = False
        self._subscriptions = [
            event_bus.subscribe(DISPLAY_SETS_REMOVED, self._on_display_sets_removed),
        ]

    # Loading

    def load_segmentation(self, display_set: SegmentationDisplaySet) -> "Future[Segmentation]":
        """
        Start (or join) decoding of a segmentation display set.

        Returns:
            Future resolving to the Segmentation, or failing with DecodeFailure
        """
        segmentation_id = display_set.display_set_instance_uid
        existing = self._segmentations.get(segmentation_id)
        if existing is not None:
            done: "Future[Segmentation]" = Future()
            done.set_result(existing)
            return done
        if segmentation_id in self._pending:
            return self._pending[segmentation_id][1]

        result: "Future[Segmentation]" = Future()
        self._pending[segmentation_id] = (display_set, result)
        print(f"[SEG] Loading segmentation {segmentation_id}")
        loader_future = self.loader(display_set)
        loader_future.add_done_callback(lambda f: self._on_decoded(display_set, f, result))
        return result

    def _on_decoded(self, display_set: SegmentationDisplaySet, loader_future: Future,
                    result: "Future[Segmentation]") -> None:
        segmentation_id = display_set.display_set_instance_uid
        pending = self._pending.get(segmentation_id)
        if pending is not None and pending[1] is result:
            del self._pending[segmentation_id]
        if result.cancelled():
            # Abandoned while decoding; the late result is dropped
            debug_log("segmentation_service._on_decoded", segmentation_id, {"dropped": True})
            return
        if self._disposed or loader_future.cancelled():
            result.cancel()
            return

        error = loader_future.exception()
        if error is not None:
            if not isinstance(error, DecodeFailure):
                error = DecodeFailure(f"Segmentation {segmentation_id} failed to decode: {error}",
                                      segmentation_id=segmentation_id)
            print(f"[SEG] {error.message}")
            self.event_bus.publish(SEGMENTATION_LOADING_FAILED, {
                "segmentation_id": segmentation_id,
                "error": error.message,
            })
            result.set_exception(error)
            return

        decoded: DecodedSegmentation = loader_future.result()
        segments = dict(display_set.segments)
        for segment_index in decoded.segment_indices:
            segments.setdefault(segment_index, Segment(segment_index))
        segmentation = Segmentation(segmentation_id, display_set, segments,
                                    decoded.labelmap, decoded.centroids)
        self._segmentations[segmentation_id] = segmentation
        display_set.first_non_zero_voxel_image_id = decoded.first_non_zero_voxel_image_id
        display_set.is_loaded = True

        num_segments = segmentation.num_segments
        for position in range(1, num_segments + 1):
            self.report_segment_progress(segmentation_id, position * 100.0 / num_segments, num_segments)
        print(f"[SEG] Segmentation {segmentation_id} loaded ({num_segments} segments)")
        self.event_bus.publish(SEGMENTATION_LOADING_COMPLETE, {
            "segmentation_id": segmentation_id,
            "seg_display_set_instance_uid": segmentation_id,
        })
        result.set_result(segmentation)

    def report_segment_progress(self, segmentation_id: str, percent_complete: float, num_segments: int) -> None:
        self.event_bus.publish(SEGMENT_LOADING_COMPLETE, {
            "segmentation_id": segmentation_id,
            "percent_complete": percent_complete,
            "num_segments": num_segments,
        })

    def is_loading(self, segmentation_id: str) -> bool:
        return segmentation_id in self._pending

    def cancel_loading(self, segmentation_id: str) -> bool:
        """
        Abandon an in-flight load. Its Future resolves as cancelled and a
        decode result arriving later is neither registered nor announced.

        Returns:
            True if a load was pending
        """
        pending = self._pending.pop(segmentation_id, None)
        if pending is None:
            return False
        print(f"[SEG] Cancelled loading of {segmentation_id}")
        pending[1].cancel()
        return True

    # Segmentations

    def add_segmentation(self, segmentation: Segmentation) -> None:
        """Register an already decoded segmentation."""
        self._segmentations[segmentation.id] = segmentation
        segmentation.display_set.is_loaded = True

    def get_segmentation(self, segmentation_id: str) -> Optional[Segmentation]:
        return self._segmentations.get(segmentation_id)

    def get_segmentations(self) -> List[Segmentation]:
        return list(self._segmentations.values())

    def remove_segmentation(self, segmentation_id: str) -> bool:
        """Remove a segmentation and all its representations."""
        self.remove_segmentation_representations(segmentation_id)
        segmentation = self._segmentations.pop(segmentation_id, None)
        if segmentation is None:
            return False
        segmentation.display_set.is_hydrated = False
        print(f"[SEG] Removed segmentation {segmentation_id}")
        self.event_bus.publish(SEGMENTATION_REMOVED, {"segmentation_id": segmentation_id})
        return True

    def remove_all_segmentations(self) -> None:
        for segmentation_id in list(self._segmentations):
            self.remove_segmentation(segmentation_id)
        self._representations.clear()

    # Representations

    def add_segmentation_representation(self, viewport_id: str, segmentation_id: str,
                                        representation_type: str = LABELMAP) -> SegmentationRepresentation:
        """
        Show a segmentation in a viewport, replacing any other segmentation there.

        Raises:
            KeyError: if the segmentation is unknown
        """
        if segmentation_id not in self._segmentations:
            raise KeyError(f"Unknown segmentation: {segmentation_id}")
        for existing in self._representations.get(viewport_id, []):
            if existing.segmentation_id == segmentation_id and existing.type == representation_type:
                return existing
        representation = SegmentationRepresentation(segmentation_id, representation_type)
        self._representations[viewport_id] = [representation]
        debug_log("segmentation_service.add_segmentation_representation", viewport_id,
                  {"segmentation_id": segmentation_id, "type": representation_type})
        self.event_bus.publish(SEGMENTATION_REPRESENTATION_MODIFIED, {
            "viewport_id": viewport_id,
            "segmentation_id": segmentation_id,
        })
        return representation

    def get_segmentation_representations(self, viewport_id: str) -> List[SegmentationRepresentation]:
        return list(self._representations.get(viewport_id, []))

    def get_viewport_ids_with_segmentation(self, segmentation_id: str) -> List[str]:
        return [viewport_id for viewport_id, representations in self._representations.items()
                if any(r.segmentation_id == segmentation_id for r in representations)]

    def clear_segmentation_representations(self, viewport_id: str) -> None:
        if self._representations.pop(viewport_id, None):
            self.event_bus.publish(SEGMENTATION_REPRESENTATION_MODIFIED, {
                "viewport_id": viewport_id,
                "segmentation_id": None,
            })

    def remove_segmentation_representations(self, segmentation_id: str) -> List[str]:
        """
        Remove a segmentation from every viewport.

        Returns:
            Viewport ids it was removed from
        """
        affected = self.get_viewport_ids_with_segmentation(segmentation_id)
        for viewport_id in affected:
            remaining = [r for r in self._representations[viewport_id] if r.segmentation_id != segmentation_id]
            if remaining:
                self._representations[viewport_id] = remaining
            else:
                del self._representations[viewport_id]
            self.event_bus.publish(SEGMENTATION_REPRESENTATION_MODIFIED, {
                "viewport_id": viewport_id,
                "segmentation_id": segmentation_id,
            })
        return affected

    # Segments

    def _get_segment(self, segmentation_id: str, segment_index: int) -> Tuple[Segmentation, Segment]:
        segmentation = self._segmentations.get(segmentation_id)
        if segmentation is None:
            raise KeyError(f"Unknown segmentation: {segmentation_id}")
        segment = segmentation.get_segment(segment_index)
        if segment is None:
            raise KeyError(f"Segmentation {segmentation_id} has no segment {segment_index}")
        return segmentation, segment

    def _segment_modified(self, segmentation_id: str, segment_index: int) -> None:
        self.event_bus.publish(SEGMENTATION_REPRESENTATION_MODIFIED, {
            "viewport_id": None,
            "segmentation_id": segmentation_id,
            "segment_index": segment_index,
        })

    def set_active_segment(self, segmentation_id: str, segment_index: int) -> None:
        """
        Raises:
            KeyError: if the segmentation or segment is unknown
        """
        segmentation, _segment = self._get_segment(segmentation_id, segment_index)
        segmentation.active_segment_index = segment_index
        self._segment_modified(segmentation_id, segment_index)

    def toggle_segment_visibility(self, segmentation_id: str, segment_index: int) -> bool:
        """Flip a segment's visibility; returns the new value."""
        _segmentation, segment = self._get_segment(segmentation_id, segment_index)
        segment.visible = not segment.visible
        self._segment_modified(segmentation_id, segment_index)
        return segment.visible

    def toggle_segment_lock(self, segmentation_id: str, segment_index: int) -> bool:
        """Flip a segment's locked flag; returns the new value."""
        _segmentation, segment = self._get_segment(segmentation_id, segment_index)
        segment.locked = not segment.locked
        self._segment_modified(segmentation_id, segment_index)
        return segment.locked

    def set_segment_color(self, segmentation_id: str, segment_index: int, color: Tuple[int, int, int]) -> None:
        """
        Raises:
            ValueError: unless color is three integers in 0..255
        """
        _segmentation, segment = self._get_segment(segmentation_id, segment_index)
        rgb = tuple(color)
        if len(rgb) != 3 or any(not isinstance(c, (int, np.integer)) or not 0 <= c <= 255 for c in rgb):
            raise ValueError(f"Invalid RGB color: {color!r}")
        segment.color = tuple(int(c) for c in rgb)
        self._segment_modified(segmentation_id, segment_index)

    def set_segment_label(self, segmentation_id: str, segment_index: int, label: str) -> None:
        _segmentation, segment = self._get_segment(segmentation_id, segment_index)
        segment.label = label or f"Segment {segment_index}"
        self._segment_modified(segmentation_id, segment_index)

    def remove_segment(self, segmentation_id: str, segment_index: int) -> None:
        """
        Delete one segment. Other segments keep their indices and the
        segment's voxels become background.

        When the removed segment was active, the next remaining segment
        (or else the previous one) becomes active; None when none is left.
        """
        segmentation, _segment = self._get_segment(segmentation_id, segment_index)
        del segmentation.segments[segment_index]
        segmentation.centroids.pop(segment_index, None)
        if segmentation.labelmap is not None:
            segmentation.labelmap[segmentation.labelmap == segment_index] = 0
        if segmentation.active_segment_index == segment_index:
            remaining = sorted(segmentation.segments)
            following = [index for index in remaining if index > segment_index]
            if following:
                segmentation.active_segment_index = following[0]
            else:
                segmentation.active_segment_index = remaining[-1] if remaining else None
        print(f"[SEG] Removed segment {segment_index} from {segmentation_id}")
        self._segment_modified(segmentation_id, segment_index)

    # Navigation

    def jump_to_segment_center(self, segmentation_id: str, segment_index: int, viewport_id: str) -> bool:
        """
        Make a segment active and re-center the viewport camera on it.

        Returns:
            True if a centroid was known and the camera was asked to move

        Raises:
            ValueError: for segment index 0 (background) or below
            KeyError: if the segmentation is unknown
        """
        segmentation = self._segmentations.get(segmentation_id)
        if segmentation is None:
            raise KeyError(f"Unknown segmentation: {segmentation_id}")
        if segment_index < 1:
            raise ValueError(f"Segment {segment_index} is not navigable in {segmentation_id}")
        segmentation.active_segment_index = segment_index
        centroid = segmentation.get_centroid(segment_index)
        if centroid is None or self.rendering_engine is None:
            return False
        self.rendering_engine.jump_to_point(viewport_id, centroid)
        return True

    # Events

    def _on_display_sets_removed(self, payload: Dict) -> None:
        removed = set(payload.get("display_set_instance_uids") or [])
        for segmentation_id, (display_set, _result) in list(self._pending.items()):
            if segmentation_id in removed or display_set.referenced_display_set_instance_uid in removed:
                self.cancel_loading(segmentation_id)
        for segmentation in list(self._segmentations.values()):
            if segmentation.id in removed or segmentation.referenced_display_set_instance_uid in removed:
                self.remove_segmentation(segmentation.id)

    def dispose(self) -> None:
        """Unsubscribe from the bus; pending loads resolve as cancelled."""
        self._disposed = True
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
