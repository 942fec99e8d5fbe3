"""
Unit tests for DICOM loader module and loading through a viewer session.

Tests file loading, directory loading, and error handling. DICOM files are
written to a temporary directory with pydicom.
"""

import unittest
import os
import tempfile
from pathlib import Path

# Add src to path
import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from core.dicom_loader import DICOMLoader
from core.viewer_session import ViewerSession
from utils.config_manager import ConfigManager


CT_IMAGE_STORAGE = '1.2.840.10008.5.1.4.1.1.2'
TEST_CONFIG_FILENAME = "hanging_core_config_test_loader.json"


def write_ct_instance(path, study_uid, series_uid, instance_number):
    """Write a minimal CT instance (no pixel data) to path."""
    sop_uid = generate_uid()
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = CT_IMAGE_STORAGE
    file_meta.MediaStorageSOPInstanceUID = sop_uid
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = Dataset()
    ds.file_meta = file_meta
    ds.SOPClassUID = CT_IMAGE_STORAGE
    ds.SOPInstanceUID = sop_uid
    ds.StudyInstanceUID = study_uid
    ds.SeriesInstanceUID = series_uid
    ds.Modality = 'CT'
    ds.InstanceNumber = instance_number
    ds.SeriesNumber = 1
    ds.FrameOfReferenceUID = '1.2.3.for'
    ds.PatientID = 'PAT-1'
    ds.save_as(path, enforce_file_format=True)
    return sop_uid


class TestDICOMLoader(unittest.TestCase):
    """Test cases for DICOMLoader."""

    def setUp(self):
        """Set up test fixtures."""
        self.loader = DICOMLoader()
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_loader_initialization(self):
        """Test loader initialization."""
        self.assertEqual(len(self.loader.loaded_files), 0)
        self.assertEqual(len(self.loader.failed_files), 0)

    def test_load_nonexistent_file(self):
        """Test loading a non-existent file."""
        result = self.loader.load_file("/nonexistent/file.dcm")
        self.assertIsNone(result)
        self.assertEqual(len(self.loader.failed_files), 1)

    def test_load_file_without_extension(self):
        """Files are read as DICOM regardless of extension."""
        path = self.root / "IMG0001"
        sop_uid = write_ct_instance(str(path), '1.2.3.study', '1.2.3.series', 1)
        dataset = self.loader.load_file(str(path))
        self.assertIsNotNone(dataset)
        self.assertEqual(str(dataset.SOPInstanceUID), sop_uid)

    def test_non_dicom_file_is_rejected(self):
        """A text file lacks the identifiers display sets need."""
        path = self.root / "notes.txt"
        path.write_text("not a dicom file")
        self.assertIsNone(self.loader.load_file(str(path)))
        self.assertEqual(len(self.loader.get_failed_files()), 1)

    def test_load_directory_recursive(self):
        """Nested files are found; failures are listed, not raised."""
        nested = self.root / "series" / "nested"
        nested.mkdir(parents=True)
        write_ct_instance(str(self.root / "a.dcm"), '1.2.3.study', '1.2.3.series', 1)
        write_ct_instance(str(nested / "b.dcm"), '1.2.3.study', '1.2.3.series', 2)
        (self.root / "readme.txt").write_text("x")

        loaded = self.loader.load_directory(str(self.root))
        self.assertEqual(len(loaded), 2)
        self.assertEqual(len(self.loader.get_failed_files()), 1)

        flat = DICOMLoader().load_directory(str(self.root), recursive=False)
        self.assertEqual(len(flat), 1)

    def test_load_missing_directory(self):
        self.assertEqual(self.loader.load_directory(str(self.root / "missing")), [])
        self.assertEqual(len(self.loader.get_failed_files()), 1)

    def test_clear(self):
        """Test clearing loaded files."""
        self.loader.load_file("/nonexistent/file.dcm")
        self.loader.clear()
        self.assertEqual(len(self.loader.loaded_files), 0)
        self.assertEqual(len(self.loader.failed_files), 0)


class TestSessionLoadPaths(unittest.TestCase):
    """Files on disk through to a laid-out grid."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.config = ConfigManager(config_filename=TEST_CONFIG_FILENAME)
        self.session = ViewerSession(config_manager=self.config)

    def tearDown(self):
        self.session.teardown()
        self.temp_dir.cleanup()
        if self.config.config_path.exists():
            try:
                self.config.config_path.unlink()
            except OSError:
                pass

    def test_load_paths_and_open_study(self):
        for series_index in range(2):
            series_uid = f'1.2.3.series.{series_index}'
            for instance_number in (2, 1):
                write_ct_instance(str(self.root / f"s{series_index}_{instance_number}.dcm"),
                                  '1.2.3.study', series_uid, instance_number)
        (self.root / "junk.bin").write_bytes(b"\x00\x01")

        display_sets = self.session.load_paths([str(self.root)])
        self.assertEqual(len(display_sets), 2)
        self.assertEqual(display_sets[0].num_images, 2)

        selection = self.session.open_study('1.2.3.study')
        self.assertEqual(selection.stage.id, '2x1')
        self.assertEqual(len(self.session.viewport_grid.get_open_viewports()), 2)


if __name__ == '__main__':
    unittest.main()
