"""
Unit tests for SEG decoding (core.segmentation_decoder) and the default
loader of the segmentation service.

Pixel data is supplied by a Dataset subclass so no encoded SEG file is needed.
"""

import unittest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import numpy as np
from pydicom.dataset import Dataset
from pydicom.sequence import Sequence

from core.display_set import SegmentationDisplaySet
from core.display_set_service import DisplaySetService
from core.errors import DecodeFailure
from core.event_bus import SEGMENT_LOADING_COMPLETE, SEGMENTATION_LOADING_COMPLETE, EventBus
from core.segmentation_decoder import compute_centroids, decode_segmentation
from core.segmentation_service import SegmentationService, decode_immediately


class FramesDataset(Dataset):
    """Dataset whose pixel_array is given directly."""

    def __init__(self, frames):
        super().__init__()
        self._test_frames = frames

    @property
    def pixel_array(self):
        return self._test_frames


def _frame_group(segment_number, source_uid):
    identification = Dataset()
    identification.ReferencedSegmentNumber = segment_number
    source = Dataset()
    source.ReferencedSOPInstanceUID = source_uid
    derivation = Dataset()
    derivation.SourceImageSequence = Sequence([source])
    group = Dataset()
    group.SegmentIdentificationSequence = Sequence([identification])
    group.DerivationImageSequence = Sequence([derivation])
    return group


def _seg_dataset(frames, groups):
    dataset = FramesDataset(np.asarray(frames, dtype=np.uint8))
    dataset.SOPInstanceUID = "1.2.seg.instance"
    if groups is not None:
        dataset.PerFrameFunctionalGroupsSequence = Sequence(groups)
    return dataset


class TestDecodeSegmentation(unittest.TestCase):

    def setUp(self):
        frames = np.zeros((3, 4, 4), dtype=np.uint8)
        frames[0, 0, 0] = 1            # segment 1 on image A
        frames[1, 3, 3] = 1            # segment 2 on image A
        frames[2, 1:3, 1:3] = 1        # segment 1 on image B
        self.dataset = _seg_dataset(frames, [
            _frame_group(1, "1.2.img.A"),
            _frame_group(2, "1.2.img.A"),
            _frame_group(1, "1.2.img.B"),
        ])

    def test_frames_merge_per_source_image(self):
        decoded = decode_segmentation(self.dataset)
        self.assertEqual(decoded.image_ids, ["1.2.img.A", "1.2.img.B"])
        self.assertEqual(decoded.labelmap.shape, (2, 4, 4))
        self.assertEqual(decoded.labelmap[0, 0, 0], 1)
        self.assertEqual(decoded.labelmap[0, 3, 3], 2)
        self.assertEqual(int(decoded.labelmap[1].sum()), 4)

    def test_segment_indices_and_first_slice(self):
        decoded = decode_segmentation(self.dataset)
        self.assertEqual(decoded.segment_indices, [1, 2])
        self.assertEqual(decoded.first_non_zero_voxel_image_id, "1.2.img.A")

    def test_centroids(self):
        decoded = decode_segmentation(self.dataset)
        self.assertEqual(decoded.centroids[2], (0.0, 3.0, 3.0))
        # segment 1: one voxel on slice 0 plus a 2x2 block on slice 1
        z, y, x = decoded.centroids[1]
        self.assertAlmostEqual(z, 0.8)
        self.assertAlmostEqual(y, (0 + 1 + 1 + 2 + 2) / 5.0)
        self.assertAlmostEqual(x, (0 + 1 + 2 + 1 + 2) / 5.0)

    def test_single_frame_without_functional_groups(self):
        frame = np.zeros((4, 4), dtype=np.uint8)
        frame[2, 2] = 1
        decoded = decode_segmentation(_seg_dataset(frame, None))
        self.assertEqual(decoded.labelmap.shape, (1, 4, 4))
        self.assertEqual(decoded.segment_indices, [1])
        self.assertEqual(decoded.image_ids, [None])

    def test_frame_count_mismatch(self):
        frames = np.zeros((2, 4, 4), dtype=np.uint8)
        with self.assertRaises(DecodeFailure):
            decode_segmentation(_seg_dataset(frames, [_frame_group(1, "1.2.img.A")]))

    def test_missing_pixel_data(self):
        dataset = Dataset()
        dataset.SOPInstanceUID = "1.2.seg.empty"
        with self.assertRaises(DecodeFailure) as ctx:
            decode_segmentation(dataset)
        self.assertEqual(ctx.exception.segmentation_id, "1.2.seg.empty")

    def test_failure_names_compression(self):
        dataset = Dataset()
        dataset.SOPInstanceUID = "1.2.seg.jpeg"
        dataset._compression_type = "JPEG Baseline"
        with self.assertRaises(DecodeFailure) as ctx:
            decode_segmentation(dataset)
        self.assertIn("JPEG Baseline", ctx.exception.message)

    def test_empty_labelmap_has_no_centroids(self):
        self.assertEqual(compute_centroids(np.zeros((2, 3, 3), dtype=np.uint16)), {})


class TestDefaultLoader(unittest.TestCase):

    def setUp(self):
        frames = np.zeros((2, 4, 4), dtype=np.uint8)
        frames[0, 1, 1] = 1
        frames[1, 2, 2] = 1
        self.instance = _seg_dataset(frames, [_frame_group(1, "1.2.img.A"), _frame_group(2, "1.2.img.B")])
        self.display_set = SegmentationDisplaySet(
            "1.2.seg", referenced_display_set_instance_uid="1.2.base", instance=self.instance)

    def test_decode_immediately_resolves(self):
        future = decode_immediately(self.display_set)
        self.assertTrue(future.done())
        self.assertEqual(future.result().segment_indices, [1, 2])

    def test_decode_immediately_without_instance_fails(self):
        future = decode_immediately(SegmentationDisplaySet("1.2.seg.none"))
        self.assertIsInstance(future.exception(), DecodeFailure)

    def test_service_loads_and_reports_progress(self):
        bus = EventBus()
        progress = []
        completed = []
        bus.subscribe(SEGMENT_LOADING_COMPLETE, lambda p: progress.append(p["percent_complete"]))
        bus.subscribe(SEGMENTATION_LOADING_COMPLETE, lambda p: completed.append(p["segmentation_id"]))
        service = SegmentationService(bus, DisplaySetService(bus))

        segmentation = service.load_segmentation(self.display_set).result()
        self.assertEqual(segmentation.num_segments, 2)
        self.assertEqual(progress, [50.0, 100.0])
        self.assertEqual(completed, ["1.2.seg"])
        self.assertTrue(self.display_set.is_loaded)
        self.assertEqual(self.display_set.first_non_zero_voxel_image_id, "1.2.img.A")
        self.assertIs(service.load_segmentation(self.display_set).result(), segmentation)
        service.dispose()


if __name__ == "__main__":
    unittest.main()
