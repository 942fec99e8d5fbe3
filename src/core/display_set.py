"""
Display Set and Study Model

Renderable groupings the hanging-protocol core lays out: image series
(DisplaySet), segmentation overlays (SegmentationDisplaySet) and the studies
that own them. Matching rules read candidate attributes through
get_attribute(), which returns None for anything unknown.

Inputs:
    - Attribute values extracted from DICOM metadata (see display_set_factory)

Outputs:
    - DisplaySet / SegmentationDisplaySet / Study objects
    - Attribute lookups for matching rules

Requirements:
    - typing for type hints
"""

from typing import Any, Dict, List, Optional, Tuple


# Modalities that never produce a viewable image stack on their own
NON_IMAGE_MODALITIES = ["SM", "ECG", "SR", "SEG", "RTSTRUCT", "RTPLAN", "RTDOSE", "PR", "KO", "DOC"]


class Segment:
    """Metadata of one segment of a segmentation (index 0 is background and never a Segment)."""

    def __init__(
        self,
        segment_index: int,
        label: str = "",
        color: Tuple[int, int, int] = (255, 0, 0),
        visible: bool = True,
        locked: bool = False,
    ):
        if segment_index < 1:
            raise ValueError(f"Segment index must be >= 1, got {segment_index}")
        self.segment_index = segment_index
        self.label = label or f"Segment {segment_index}"
        self.color = tuple(color)
        self.visible = visible
        self.locked = locked

    def __repr__(self) -> str:
        return f"Segment({self.segment_index}, {self.label!r})"


class DisplaySet:
    """
    A renderable series.

    Holds identity, spatial registration (frame of reference) and the derived
    attributes matching rules read. referenced_display_set_instance_uid is a
    lookup-only relation to another display set.
    """

    def __init__(
        self,
        display_set_instance_uid: str,
        series_instance_uid: str = "",
        study_instance_uid: str = "",
        modality: Optional[str] = None,
        frame_of_reference_uid: Optional[str] = None,
        image_ids: Optional[List[str]] = None,
        series_number: Optional[int] = None,
        series_description: str = "",
        pixel_spacing: Optional[Tuple[float, float]] = None,
        slice_thickness: Optional[float] = None,
        referenced_display_set_instance_uid: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.display_set_instance_uid = display_set_instance_uid
        self.series_instance_uid = series_instance_uid or display_set_instance_uid
        self.study_instance_uid = study_instance_uid
        self.modality = modality
        self.frame_of_reference_uid = frame_of_reference_uid
        self.image_ids: List[str] = list(image_ids or [])
        self.series_number = series_number
        self.series_description = series_description
        self.pixel_spacing = pixel_spacing
        self.slice_thickness = slice_thickness
        self.referenced_display_set_instance_uid = referenced_display_set_instance_uid
        # First-instance metadata (PatientID, StudyDate, ...) for overlays and rules
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.is_loaded = True
        self.is_hydrated = False

    @property
    def num_images(self) -> int:
        return len(self.image_ids)

    @property
    def is_segmentation(self) -> bool:
        return False

    def get_attribute(self, name: str) -> Any:
        """
        Attribute lookup used by matching rules.

        Accepts DICOM keywords (Modality, SeriesDescription, ...) and the
        derived names numImages / numImageFrames. Unknown names fall back to
        first-instance metadata and then to None.
        """
        derived = {
            "displaySetInstanceUID": self.display_set_instance_uid,
            "SeriesInstanceUID": self.series_instance_uid,
            "StudyInstanceUID": self.study_instance_uid,
            "Modality": self.modality,
            "FrameOfReferenceUID": self.frame_of_reference_uid,
            "SeriesNumber": self.series_number,
            "SeriesDescription": self.series_description or None,
            "PixelSpacing": list(self.pixel_spacing) if self.pixel_spacing else None,
            "SliceThickness": self.slice_thickness,
            "numImages": self.num_images,
            "numImageFrames": self.num_images,
            "isSegmentation": self.is_segmentation,
        }
        if name in derived:
            return derived[name]
        return self.metadata.get(name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.display_set_instance_uid!r}, modality={self.modality!r})"


class SegmentationDisplaySet(DisplaySet):
    """
    A segmentation overlay display set.

    Starts unloaded; is_loaded flips when the binary labelmap has been decoded
    and is_hydrated when it is represented in a viewport.
    """

    def __init__(
        self,
        display_set_instance_uid: str,
        referenced_display_set_instance_uid: Optional[str] = None,
        segments: Optional[Dict[int, Segment]] = None,
        segmentation_slice_thickness: Optional[float] = None,
        spacing_between_slices: Optional[float] = None,
        instance: Any = None,
        **kwargs,
    ):
        kwargs.setdefault("modality", "SEG")
        super().__init__(
            display_set_instance_uid,
            referenced_display_set_instance_uid=referenced_display_set_instance_uid,
            **kwargs,
        )
        self.segments: Dict[int, Segment] = dict(segments or {})
        self.segmentation_slice_thickness = segmentation_slice_thickness
        self.spacing_between_slices = spacing_between_slices
        # Source dataset, handed to the decoder
        self.instance = instance
        self.first_non_zero_voxel_image_id: Optional[str] = None
        self.is_loaded = False

    @property
    def is_segmentation(self) -> bool:
        return True

    @property
    def num_segments(self) -> int:
        return len(self.segments)


class Study:
    """A loaded study: identity plus its ordered display sets."""

    def __init__(self, study_instance_uid: str, display_sets: Optional[List[DisplaySet]] = None,
                 metadata: Optional[Dict[str, Any]] = None):
        self.study_instance_uid = study_instance_uid
        self.display_sets: List[DisplaySet] = list(display_sets or [])
        self.metadata: Dict[str, Any] = dict(metadata or {})

    def add_display_set(self, display_set: DisplaySet) -> None:
        if display_set not in self.display_sets:
            self.display_sets.append(display_set)

    def remove_display_set(self, display_set_instance_uid: str) -> bool:
        for i, display_set in enumerate(self.display_sets):
            if display_set.display_set_instance_uid == display_set_instance_uid:
                del self.display_sets[i]
                return True
        return False

    def get_attribute(self, name: str) -> Any:
        """Study-level attribute lookup for protocol matching rules."""
        if name == "StudyInstanceUID":
            return self.study_instance_uid
        if name == "ModalitiesInStudy":
            modalities = []
            for display_set in self.display_sets:
                if display_set.modality and display_set.modality not in modalities:
                    modalities.append(display_set.modality)
            return modalities
        if name == "numDisplaySets":
            return len(self.display_sets)
        if name in ("numImages", "numImageFrames"):
            return sum(ds.num_images for ds in self.display_sets
                       if ds.modality not in NON_IMAGE_MODALITIES)
        return self.metadata.get(name)
