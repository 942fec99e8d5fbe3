"""
DICOM Utility Functions

This module provides helper functions for reading the DICOM attributes the
hanging-protocol core relies on:
- Pixel spacing and slice thickness (matching-rule attributes)
- Frame of reference and series references (sync groups, SEG base lookup)
- Segmentation pixel measures from functional groups
- CIELab to RGB conversion for recommended segment display colors

Inputs:
    - pydicom.Dataset objects

Outputs:
    - Plain Python values (str, float, tuples) or None when absent

Requirements:
    - pydicom library
    - numpy for color conversion
"""

from typing import Any, List, Optional, Tuple
import numpy as np
from pydicom.dataset import Dataset


# D65 reference white used by DICOM for CIELab values (PS3.3 C.10.7.1.1)
_D65_WHITE = np.array([0.950456, 1.0, 1.088754])

_XYZ_TO_LINEAR_RGB = np.array([
    [3.2404542, -1.5371385, -0.4985314],
    [-0.9692660, 1.8760108, 0.0415560],
    [0.0556434, -0.2040259, 1.0572252],
])


def get_tag_value(dataset: Dataset, tag_name: str, default: Any = None) -> Any:
    """
    Get tag value from dataset.

    Args:
        dataset: pydicom Dataset
        tag_name: Tag keyword
        default: Default value if tag not found

    Returns:
        Tag value or default
    """
    try:
        if hasattr(dataset, tag_name):
            value = getattr(dataset, tag_name)
            if value is None or value == "":
                return default
            return value
        return default
    except Exception:
        return default


def get_first_item(sequence) -> Optional[Dataset]:
    """Return the first item of a sequence (or the value itself if not a sequence)."""
    if sequence is None:
        return None
    try:
        if len(sequence) == 0:
            return None
        return sequence[0]
    except TypeError:
        return sequence


def get_pixel_spacing(dataset: Dataset) -> Optional[Tuple[float, float]]:
    """
    Get pixel spacing from DICOM dataset.
    Checks sources in priority order:
    1. Pixel Spacing (0028,0030) - primary
    2. Imager Pixel Spacing (0018,1164) - fallback

    Args:
        dataset: pydicom Dataset

    Returns:
        Tuple of (row_spacing, column_spacing) in mm, or None if not available
    """
    for keyword in ('PixelSpacing', 'ImagerPixelSpacing'):
        try:
            if hasattr(dataset, keyword):
                spacing = getattr(dataset, keyword)
                if spacing and len(spacing) >= 2:
                    row_spacing = float(spacing[0])
                    col_spacing = float(spacing[1])
                    if row_spacing > 0 and col_spacing > 0:
                        return (row_spacing, col_spacing)
        except Exception:
            pass
    return None


def get_slice_thickness(dataset: Dataset) -> Optional[float]:
    """
    Get slice thickness from DICOM dataset.

    Args:
        dataset: pydicom Dataset

    Returns:
        Slice thickness in mm, or None if not available
    """
    try:
        if hasattr(dataset, 'SliceThickness') and dataset.SliceThickness not in (None, ""):
            return float(dataset.SliceThickness)
    except Exception:
        pass

    return None


def get_frame_of_reference_uid(dataset: Dataset) -> Optional[str]:
    """Get FrameOfReferenceUID (0020,0052) as a string, or None."""
    value = get_tag_value(dataset, 'FrameOfReferenceUID')
    return str(value) if value else None


def get_referenced_series_uid(dataset: Dataset) -> Optional[str]:
    """
    Get the series a derived object (SEG, RTSTRUCT) was drawn on.

    Reads ReferencedSeriesSequence (0008,1115) first item.

    Returns:
        SeriesInstanceUID string or None
    """
    item = get_first_item(get_tag_value(dataset, 'ReferencedSeriesSequence'))
    if item is None:
        return None
    value = get_tag_value(item, 'SeriesInstanceUID')
    return str(value) if value else None


def get_segmentation_pixel_measures(dataset: Dataset) -> Tuple[Optional[float], Optional[float]]:
    """
    Get (SliceThickness, SpacingBetweenSlices) of a segmentation from its
    SharedFunctionalGroupsSequence > PixelMeasuresSequence.

    Either value is None when absent.
    """
    shared = get_first_item(get_tag_value(dataset, 'SharedFunctionalGroupsSequence'))
    if shared is None:
        return (None, None)
    measures = get_first_item(get_tag_value(shared, 'PixelMeasuresSequence'))
    if measures is None:
        return (None, None)

    def _as_float(keyword: str) -> Optional[float]:
        try:
            value = get_tag_value(measures, keyword)
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    return (_as_float('SliceThickness'), _as_float('SpacingBetweenSlices'))


def dicom_lab_to_rgb(lab_values: List[int]) -> Tuple[int, int, int]:
    """
    Convert a DICOM scaled CIELab triplet to an 8-bit sRGB color.

    DICOM stores L* in 0..65535 (for 0..100) and a*, b* in 0..65535
    (for -128..127).

    Args:
        lab_values: Three unsigned 16-bit integers

    Returns:
        (r, g, b) each 0..255
    """
    scaled = np.asarray(lab_values, dtype=float)
    l_star = scaled[0] * 100.0 / 65535.0
    a_star = scaled[1] * 255.0 / 65535.0 - 128.0
    b_star = scaled[2] * 255.0 / 65535.0 - 128.0

    fy = (l_star + 16.0) / 116.0
    f = np.array([fy + a_star / 500.0, fy, fy - b_star / 200.0])
    delta = 6.0 / 29.0
    xyz = np.where(f > delta, f ** 3, 3 * delta ** 2 * (f - 4.0 / 29.0)) * _D65_WHITE

    linear = _XYZ_TO_LINEAR_RGB @ xyz
    linear = np.clip(linear, 0.0, 1.0)
    srgb = np.where(linear <= 0.0031308, 12.92 * linear, 1.055 * linear ** (1 / 2.4) - 0.055)
    rgb = np.clip(np.round(srgb * 255.0), 0, 255).astype(int)
    return (int(rgb[0]), int(rgb[1]), int(rgb[2]))


def get_instance_sort_key(dataset: Dataset) -> Tuple[float, str]:
    """
    Sort key for instances within a series: InstanceNumber, then SOPInstanceUID.

    Instances without an InstanceNumber sort last.
    """
    try:
        number = float(get_tag_value(dataset, 'InstanceNumber', float('inf')))
    except (TypeError, ValueError):
        number = float('inf')
    return (number, str(get_tag_value(dataset, 'SOPInstanceUID', '')))
