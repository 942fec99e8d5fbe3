"""
Display Set Factory

Groups loaded pydicom datasets into display sets:
- Image series -> one DisplaySet per (StudyInstanceUID, SeriesInstanceUID),
  instances sorted by InstanceNumber
- Segmentation objects (Modality SEG) -> one SegmentationDisplaySet per
  instance, with its segment map parsed from SegmentSequence and its base
  series taken from ReferencedSeriesSequence

Display sets are emitted in first-seen series order, which is the tie-break
order the stage selector relies on.

Inputs:
    - List of pydicom.Dataset objects

Outputs:
    - List of DisplaySet / SegmentationDisplaySet objects

Requirements:
    - pydicom library
    - utils.dicom_utils for attribute extraction
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from pydicom.dataset import Dataset

from core.display_set import DisplaySet, Segment, SegmentationDisplaySet
from utils.dicom_utils import (
    dicom_lab_to_rgb,
    get_frame_of_reference_uid,
    get_instance_sort_key,
    get_pixel_spacing,
    get_referenced_series_uid,
    get_segmentation_pixel_measures,
    get_slice_thickness,
    get_tag_value,
)


SEGMENTATION_STORAGE_UID = '1.2.840.10008.5.1.4.1.1.66.4'

# Fallback segment colors when RecommendedDisplayCIELabValue is absent
DEFAULT_SEGMENT_COLORS = [
    (221, 84, 84), (77, 228, 121), (166, 70, 235), (189, 180, 116),
    (109, 182, 196), (204, 101, 157), (123, 211, 94), (93, 87, 218),
    (225, 128, 80), (73, 232, 172),
]

# First-instance attributes copied onto the display set for overlays and rules
_METADATA_KEYWORDS = (
    'PatientID', 'PatientName', 'PatientSex', 'PatientAge', 'StudyDate',
    'StudyDescription', 'BodyPartExamined', 'ManufacturerModelName',
    'SpacingBetweenSlices', 'ViewPosition', 'ImageType', 'ProtocolName',
)


def is_segmentation_dataset(dataset: Dataset) -> bool:
    """True for DICOM SEG instances."""
    modality = str(get_tag_value(dataset, 'Modality', ''))
    sop_class_uid = str(get_tag_value(dataset, 'SOPClassUID', ''))
    return modality == 'SEG' or sop_class_uid == SEGMENTATION_STORAGE_UID


def _extract_metadata(dataset: Dataset) -> Dict[str, object]:
    metadata = {}
    for keyword in _METADATA_KEYWORDS:
        value = get_tag_value(dataset, keyword)
        if value is None:
            continue
        if keyword == 'ImageType':
            value = [str(v) for v in value]
        elif keyword != 'SpacingBetweenSlices':
            value = str(value)
        metadata[keyword] = value
    return metadata


def _series_number(dataset: Dataset) -> Optional[int]:
    try:
        value = get_tag_value(dataset, 'SeriesNumber')
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_segments(dataset: Dataset) -> Dict[int, Segment]:
    """
    Parse SegmentSequence into a segment map.

    Segment numbers < 1 are skipped (0 is background).

    Returns:
        {segment_index: Segment}
    """
    segments: Dict[int, Segment] = {}
    for position, item in enumerate(get_tag_value(dataset, 'SegmentSequence', []) or []):
        try:
            segment_index = int(get_tag_value(item, 'SegmentNumber', position + 1))
        except (TypeError, ValueError):
            continue
        if segment_index < 1:
            continue
        lab = get_tag_value(item, 'RecommendedDisplayCIELabValue')
        if lab is not None and len(lab) == 3:
            color = dicom_lab_to_rgb(list(lab))
        else:
            color = DEFAULT_SEGMENT_COLORS[(segment_index - 1) % len(DEFAULT_SEGMENT_COLORS)]
        label = str(get_tag_value(item, 'SegmentLabel', '') or '')
        segments[segment_index] = Segment(segment_index, label=label, color=color)
    return segments


def make_segmentation_display_set(dataset: Dataset) -> SegmentationDisplaySet:
    """Build a SegmentationDisplaySet from a SEG instance."""
    slice_thickness, spacing_between_slices = get_segmentation_pixel_measures(dataset)
    sop_instance_uid = str(get_tag_value(dataset, 'SOPInstanceUID', ''))
    return SegmentationDisplaySet(
        sop_instance_uid,
        referenced_display_set_instance_uid=get_referenced_series_uid(dataset),
        segments=parse_segments(dataset),
        segmentation_slice_thickness=slice_thickness,
        spacing_between_slices=spacing_between_slices,
        instance=dataset,
        series_instance_uid=str(get_tag_value(dataset, 'SeriesInstanceUID', '')),
        study_instance_uid=str(get_tag_value(dataset, 'StudyInstanceUID', '')),
        frame_of_reference_uid=get_frame_of_reference_uid(dataset),
        image_ids=[sop_instance_uid],
        series_number=_series_number(dataset),
        series_description=str(get_tag_value(dataset, 'SeriesDescription', '') or ''),
        metadata=_extract_metadata(dataset),
    )


def make_image_display_set(datasets: List[Dataset]) -> DisplaySet:
    """Build a DisplaySet from the (unsorted) instances of one image series."""
    ordered = sorted(datasets, key=get_instance_sort_key)
    first = ordered[0]
    series_uid = str(get_tag_value(first, 'SeriesInstanceUID', ''))
    return DisplaySet(
        series_uid,
        series_instance_uid=series_uid,
        study_instance_uid=str(get_tag_value(first, 'StudyInstanceUID', '')),
        modality=str(get_tag_value(first, 'Modality', '')) or None,
        frame_of_reference_uid=get_frame_of_reference_uid(first),
        image_ids=[str(get_tag_value(ds, 'SOPInstanceUID', '')) for ds in ordered],
        series_number=_series_number(first),
        series_description=str(get_tag_value(first, 'SeriesDescription', '') or ''),
        pixel_spacing=get_pixel_spacing(first),
        slice_thickness=get_slice_thickness(first),
        metadata=_extract_metadata(first),
    )


def make_display_sets(datasets: List[Dataset]) -> List[DisplaySet]:
    """
    Group datasets into display sets.

    Args:
        datasets: Loaded pydicom datasets (any order, any studies)

    Returns:
        Display sets in first-seen order
    """
    ordered_keys: "OrderedDict[Tuple[str, str, str], List[Dataset]]" = OrderedDict()
    for dataset in datasets:
        study_uid = str(get_tag_value(dataset, 'StudyInstanceUID', ''))
        series_uid = str(get_tag_value(dataset, 'SeriesInstanceUID', ''))
        if is_segmentation_dataset(dataset):
            key = ('SEG', study_uid, str(get_tag_value(dataset, 'SOPInstanceUID', '')))
        else:
            key = ('IMAGE', study_uid, series_uid)
        ordered_keys.setdefault(key, []).append(dataset)

    display_sets: List[DisplaySet] = []
    for (kind, _study_uid, _uid), grouped in ordered_keys.items():
        if kind == 'SEG':
            display_sets.append(make_segmentation_display_set(grouped[0]))
        else:
            display_sets.append(make_image_display_set(grouped))
    return display_sets
