"""
DICOM File Loader

This module loads DICOM files for a viewer session from:
- Single files
- Multiple files
- Directories (with recursive search)
- Files regardless of extension

Loaded datasets are handed to display_set_factory, which groups them into
display sets for the hanging protocol.

Inputs:
    - File paths (single or multiple)
    - Directory paths

Outputs:
    - List of successfully loaded DICOM datasets
    - List of files that failed to load (with error messages)

Requirements:
    - pydicom library for DICOM file reading
    - pathlib for path handling
    - os for file system operations
"""

import os
import warnings
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pydicom
from pydicom.errors import InvalidDicomError

# Files larger than this defer pixel data loading until a decoder asks for it
DEFAULT_DEFER_SIZE = 262144000  # 250 MB in bytes

# Transfer syntaxes whose pixel data needs an optional decoder plugin
COMPRESSED_SYNTAXES = {
    '1.2.840.10008.1.2.5': 'RLE Lossless',
    '1.2.840.10008.1.2.4.50': 'JPEG Baseline',
    '1.2.840.10008.1.2.4.51': 'JPEG Extended',
    '1.2.840.10008.1.2.4.57': 'JPEG Lossless',
    '1.2.840.10008.1.2.4.70': 'JPEG Lossless',
    '1.2.840.10008.1.2.4.80': 'JPEG-LS Lossless',
    '1.2.840.10008.1.2.4.81': 'JPEG-LS Lossy',
    '1.2.840.10008.1.2.4.90': 'JPEG 2000 Lossless',
    '1.2.840.10008.1.2.4.91': 'JPEG 2000',
}


class DICOMLoader:
    """
    Handles loading DICOM files from various sources.

    Supports:
    - Single file loading
    - Multiple file loading
    - Recursive directory scanning
    - Extension-agnostic file loading (attempts to load all files as DICOM)
    """

    def __init__(self):
        """Initialize the DICOM loader."""
        self.loaded_files: List[pydicom.Dataset] = []
        self.failed_files: List[Tuple[str, str]] = []  # (path, error_message)

    def load_file(self, file_path: str, defer_size: Optional[int] = None) -> Optional[pydicom.Dataset]:
        """
        Load a single DICOM file.

        Args:
            file_path: Path to the DICOM file
            defer_size: Optional size threshold (in bytes) for deferring pixel data loading.
                       Default None means load all data immediately.

        Returns:
            pydicom.Dataset if successful, None otherwise
        """
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings('ignore', message='.*excess padding.*', category=UserWarning)
                if defer_size is not None and os.path.getsize(file_path) > defer_size:
                    dataset = pydicom.dcmread(file_path, force=True, defer_size=defer_size)
                else:
                    dataset = pydicom.dcmread(file_path, force=True)

            # force=True accepts any bytes; require the identifiers display sets are built from
            if not hasattr(dataset, 'SOPInstanceUID') or not hasattr(dataset, 'SeriesInstanceUID'):
                self.failed_files.append((file_path, "Not a DICOM instance (missing SOPInstanceUID/SeriesInstanceUID)"))
                return None

            transfer_syntax = ''
            if hasattr(dataset, 'file_meta') and hasattr(dataset.file_meta, 'TransferSyntaxUID'):
                transfer_syntax = str(dataset.file_meta.TransferSyntaxUID)
            dataset._compression_type = COMPRESSED_SYNTAXES.get(transfer_syntax)
            return dataset

        except MemoryError as e:
            self.failed_files.append((file_path, f"Memory error: File too large to load. Error: {str(e)}"))
            return None
        except InvalidDicomError as e:
            self.failed_files.append((file_path, f"Invalid DICOM file: {str(e)}"))
            return None
        except OSError as e:
            # File not found, permission denied, etc.
            self.failed_files.append((file_path, f"File system error: {str(e)}"))
            return None
        except Exception as e:
            error_msg = f"Error reading file: {str(e)}"
            error_type = type(e).__name__
            if error_type not in error_msg:
                error_msg = f"{error_type}: {error_msg}"
            self.failed_files.append((file_path, error_msg))
            return None

    def load_files(self, file_paths: List[str], defer_size: Optional[int] = None,
                   progress_callback: Optional[Callable[[int, int, str], None]] = None) -> List[pydicom.Dataset]:
        """
        Load multiple DICOM files.

        Args:
            file_paths: Paths to load
            defer_size: See load_file
            progress_callback: Optional (current, total, filename) callback

        Returns:
            List of successfully loaded DICOM datasets
        """
        self.loaded_files = []
        self.failed_files = []
        total_files = len(file_paths)
        for idx, file_path in enumerate(file_paths):
            if progress_callback:
                progress_callback(idx + 1, total_files, os.path.basename(file_path))
            dataset = self.load_file(file_path, defer_size=defer_size)
            if dataset is not None:
                self.loaded_files.append(dataset)
        return self.loaded_files

    def load_directory(self, directory_path: str, recursive: bool = True, defer_size: Optional[int] = None,
                       progress_callback: Optional[Callable[[int, int, str], None]] = None) -> List[pydicom.Dataset]:
        """
        Load all DICOM files from a directory.

        Args:
            directory_path: Path to the directory
            recursive: If True, search subdirectories recursively
            defer_size: See load_file; defaults to DEFAULT_DEFER_SIZE
            progress_callback: Optional (current, total, filename) callback

        Returns:
            List of successfully loaded DICOM datasets
        """
        if defer_size is None:
            defer_size = DEFAULT_DEFER_SIZE

        dir_path = Path(directory_path)
        if not dir_path.exists() or not dir_path.is_dir():
            self.loaded_files = []
            self.failed_files = [(directory_path, "Directory does not exist or is not a directory")]
            return []

        if recursive:
            file_paths = sorted(str(p) for p in dir_path.rglob('*') if p.is_file())
        else:
            file_paths = sorted(str(p) for p in dir_path.iterdir() if p.is_file())

        loaded = self.load_files(file_paths, defer_size=defer_size, progress_callback=progress_callback)
        if self.failed_files:
            print(f"[LOADER] {len(self.failed_files)} of {len(file_paths)} file(s) could not be loaded from {directory_path}")
        return loaded

    def get_failed_files(self) -> List[Tuple[str, str]]:
        """
        Get list of files that failed to load with error messages.

        Returns:
            List of tuples (file_path, error_message)
        """
        return self.failed_files.copy()

    def clear(self) -> None:
        """Clear loaded files and failed files lists."""
        self.loaded_files = []
        self.failed_files = []
