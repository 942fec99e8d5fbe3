"""
Segmentation Decoder

Decodes a DICOM SEG instance into a labelmap volume. Each frame of a binary
or fractional SEG belongs to one segment (PerFrameFunctionalGroupsSequence >
SegmentIdentificationSequence > ReferencedSegmentNumber) and one source image
(DerivationImageSequence > SourceImageSequence > ReferencedSOPInstanceUID).
Frames referencing the same source image are merged into one labelmap slice;
a later segment overwrites an earlier one where they overlap.

Also computes per-segment centroids (index space, z/y/x) used to re-center the
camera, and the first source image that holds any segment voxel.

Inputs:
    - pydicom Dataset of a SEG instance

Outputs:
    - DecodedSegmentation (labelmap, slice image ids, centroids)
    - DecodeFailure on unreadable pixel data

Requirements:
    - pydicom for pixel data access
    - numpy for labelmap assembly and centroids
"""

from typing import Dict, List, Optional, Tuple

import numpy as np
from pydicom.dataset import Dataset

from core.errors import DecodeFailure
from utils.dicom_utils import get_first_item, get_tag_value


class DecodedSegmentation:
    """Decoded labelmap of one segmentation."""

    def __init__(self, labelmap: np.ndarray, image_ids: List[Optional[str]],
                 centroids: Dict[int, Tuple[float, float, float]]):
        # labelmap[slice, row, column] = segment index (0 background)
        self.labelmap = labelmap
        self.image_ids = image_ids
        self.centroids = centroids

    @property
    def first_non_zero_voxel_image_id(self) -> Optional[str]:
        for slice_index in range(self.labelmap.shape[0]):
            if np.any(self.labelmap[slice_index]):
                return self.image_ids[slice_index]
        return None

    @property
    def segment_indices(self) -> List[int]:
        return sorted(int(v) for v in np.unique(self.labelmap) if v > 0)


def compute_centroids(labelmap: np.ndarray) -> Dict[int, Tuple[float, float, float]]:
    """
    Mean voxel position per segment index.

    Returns:
        {segment_index: (z, y, x)} for every non-zero index present
    """
    centroids = {}
    for value in np.unique(labelmap):
        if value == 0:
            continue
        coords = np.argwhere(labelmap == value)
        z, y, x = coords.mean(axis=0)
        centroids[int(value)] = (float(z), float(y), float(x))
    return centroids


def _frame_segment_number(frame_group: Dataset) -> Optional[int]:
    identification = get_first_item(get_tag_value(frame_group, 'SegmentIdentificationSequence'))
    if identification is None:
        return None
    try:
        return int(get_tag_value(identification, 'ReferencedSegmentNumber'))
    except (TypeError, ValueError):
        return None


def _frame_source_image(frame_group: Dataset) -> Optional[str]:
    derivation = get_first_item(get_tag_value(frame_group, 'DerivationImageSequence'))
    if derivation is None:
        return None
    source = get_first_item(get_tag_value(derivation, 'SourceImageSequence'))
    if source is None:
        return None
    value = get_tag_value(source, 'ReferencedSOPInstanceUID')
    return str(value) if value else None


def _read_frames(dataset: Dataset) -> np.ndarray:
    try:
        frames = dataset.pixel_array
    except Exception as e:
        message = f"Cannot decode segmentation pixel data: {e}"
        compression = getattr(dataset, "_compression_type", None)
        if compression:
            message += f" ({compression} pixel data needs a decoder plugin)"
        raise DecodeFailure(
            message,
            segmentation_id=str(get_tag_value(dataset, 'SOPInstanceUID', '')),
        ) from e
    frames = np.asarray(frames)
    if frames.ndim == 2:
        frames = frames[np.newaxis, ...]
    return frames


def decode_segmentation(dataset: Dataset) -> DecodedSegmentation:
    """
    Build the labelmap of a SEG instance.

    Raises:
        DecodeFailure: if pixel data is missing or frames cannot be mapped to segments
    """
    frames = _read_frames(dataset)
    per_frame = list(get_tag_value(dataset, 'PerFrameFunctionalGroupsSequence', []) or [])
    if per_frame and len(per_frame) != frames.shape[0]:
        raise DecodeFailure(
            f"SEG has {frames.shape[0]} frames but {len(per_frame)} per-frame groups",
            segmentation_id=str(get_tag_value(dataset, 'SOPInstanceUID', '')),
        )

    slice_of_image: Dict[str, int] = {}
    image_ids: List[Optional[str]] = []
    frame_slices: List[int] = []
    frame_segments: List[int] = []
    for frame_index in range(frames.shape[0]):
        group = per_frame[frame_index] if per_frame else None
        segment_number = _frame_segment_number(group) if group is not None else None
        source_image = _frame_source_image(group) if group is not None else None
        if segment_number is None:
            # Single-segment SEG without per-frame identification
            segment_number = 1
        if source_image is None:
            slice_index = len(image_ids)
            image_ids.append(None)
        elif source_image in slice_of_image:
            slice_index = slice_of_image[source_image]
        else:
            slice_index = len(image_ids)
            slice_of_image[source_image] = slice_index
            image_ids.append(source_image)
        frame_slices.append(slice_index)
        frame_segments.append(segment_number)

    labelmap = np.zeros((len(image_ids),) + frames.shape[1:], dtype=np.uint16)
    for frame_index, (slice_index, segment_number) in enumerate(zip(frame_slices, frame_segments)):
        labelmap[slice_index][frames[frame_index] > 0] = segment_number

    return DecodedSegmentation(labelmap, image_ids, compute_centroids(labelmap))
