"""
Unit tests for DICOM utility functions (utils.dicom_utils).

Tests attribute helpers on in-memory pydicom datasets: tag lookup, pixel
spacing fallback, frame of reference, SEG references and pixel measures,
CIELab colors and instance ordering. Does not require DICOM files.
Runnable with pytest or unittest.
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from pydicom.dataset import Dataset
from pydicom.sequence import Sequence

from utils.dicom_utils import (
    dicom_lab_to_rgb,
    get_first_item,
    get_frame_of_reference_uid,
    get_instance_sort_key,
    get_pixel_spacing,
    get_referenced_series_uid,
    get_segmentation_pixel_measures,
    get_slice_thickness,
    get_tag_value,
)


class TestTagValue(unittest.TestCase):
    """Tests for get_tag_value and get_first_item."""

    def test_present_and_missing(self):
        ds = Dataset()
        ds.Modality = "CT"
        self.assertEqual(get_tag_value(ds, "Modality"), "CT")
        self.assertEqual(get_tag_value(ds, "SeriesDescription", "n/a"), "n/a")

    def test_empty_value_returns_default(self):
        ds = Dataset()
        ds.SeriesDescription = ""
        self.assertIsNone(get_tag_value(ds, "SeriesDescription"))

    def test_first_item(self):
        item = Dataset()
        self.assertIs(get_first_item(Sequence([item])), item)
        self.assertIsNone(get_first_item(Sequence([])))
        self.assertIsNone(get_first_item(None))


class TestSpacing(unittest.TestCase):
    """Tests for get_pixel_spacing and get_slice_thickness."""

    def test_pixel_spacing(self):
        ds = Dataset()
        ds.PixelSpacing = [0.7, 0.8]
        self.assertEqual(get_pixel_spacing(ds), (0.7, 0.8))

    def test_imager_pixel_spacing_fallback(self):
        ds = Dataset()
        ds.ImagerPixelSpacing = [0.2, 0.2]
        self.assertEqual(get_pixel_spacing(ds), (0.2, 0.2))

    def test_non_positive_spacing_ignored(self):
        ds = Dataset()
        ds.PixelSpacing = [0, 0.5]
        self.assertIsNone(get_pixel_spacing(ds))
        self.assertIsNone(get_pixel_spacing(Dataset()))

    def test_slice_thickness(self):
        ds = Dataset()
        ds.SliceThickness = "1.25"
        self.assertEqual(get_slice_thickness(ds), 1.25)
        self.assertIsNone(get_slice_thickness(Dataset()))


class TestReferences(unittest.TestCase):
    """Frame of reference and SEG references."""

    def test_frame_of_reference_uid(self):
        ds = Dataset()
        ds.FrameOfReferenceUID = "1.2.840.99.1"
        self.assertEqual(get_frame_of_reference_uid(ds), "1.2.840.99.1")
        self.assertIsNone(get_frame_of_reference_uid(Dataset()))

    def test_referenced_series_uid(self):
        referenced = Dataset()
        referenced.SeriesInstanceUID = "1.2.base"
        ds = Dataset()
        ds.ReferencedSeriesSequence = Sequence([referenced])
        self.assertEqual(get_referenced_series_uid(ds), "1.2.base")
        self.assertIsNone(get_referenced_series_uid(Dataset()))

    def test_segmentation_pixel_measures(self):
        measures = Dataset()
        measures.SliceThickness = 2.5
        shared = Dataset()
        shared.PixelMeasuresSequence = Sequence([measures])
        ds = Dataset()
        ds.SharedFunctionalGroupsSequence = Sequence([shared])
        # SpacingBetweenSlices absent
        self.assertEqual(get_segmentation_pixel_measures(ds), (2.5, None))
        self.assertEqual(get_segmentation_pixel_measures(Dataset()), (None, None))


class TestDicomLabToRgb(unittest.TestCase):
    """Tests for dicom_lab_to_rgb."""

    def test_black_and_white(self):
        self.assertEqual(dicom_lab_to_rgb([65535, 32896, 32896]), (255, 255, 255))
        self.assertEqual(dicom_lab_to_rgb([0, 32896, 32896]), (0, 0, 0))

    def test_positive_a_is_reddish(self):
        r, g, b = dicom_lab_to_rgb([35000, 55000, 45000])
        self.assertGreater(r, g)
        self.assertGreater(r, b)


class TestInstanceSortKey(unittest.TestCase):
    """Tests for get_instance_sort_key."""

    def _instance(self, sop, number=None):
        ds = Dataset()
        ds.SOPInstanceUID = sop
        if number is not None:
            ds.InstanceNumber = number
        return ds

    def test_order(self):
        instances = [self._instance("1.2.c"), self._instance("1.2.b", 2), self._instance("1.2.a", 2),
                     self._instance("1.2.d", 1)]
        ordered = sorted(instances, key=get_instance_sort_key)
        self.assertEqual([str(ds.SOPInstanceUID) for ds in ordered], ["1.2.d", "1.2.a", "1.2.b", "1.2.c"])


if __name__ == "__main__":
    unittest.main()
