from __future__ import annotations


import logging
from typing import TYPE_CHECKING, Any, Optional, Sequence, Tuple


import numpy as np


if TYPE_CHECKING:
    from pydicom import Dataset


logger = logging.getLogger(__name__)


def _as_float_tuple(values: Optional[Sequence[Any]], expected_len: int) -> Optional[Tuple[float, ...]]:
    """Convert a DICOM multi-value to a tuple of floats, or None if absent/malformed."""
    if values is None:
        return None
    try:
        converted = tuple(float(v) for v in values)
    except (TypeError, ValueError):
        return None
    if len(converted) != expected_len:
        return None
    return converted


class ImageSlice:
    """
    One 2D slice of an image or dose grid together with its patient-space geometry.

    Pixel samples are stored as (rows, cols); ``get_value(x, y)`` reads column x of row y.
    Geometry members are None when the source did not provide them.
    """

    def __init__(
        self,
        pixel_array: np.ndarray,
        image_position: Optional[Sequence[float]] = None,
        row_direction: Optional[Sequence[float]] = None,
        column_direction: Optional[Sequence[float]] = None,
        pixel_spacing: Optional[Sequence[float]] = None,
        slice_thickness: Optional[float] = None,
        sop_instance_uid: str = "",
        patient_position: str = "",
    ) -> None:
        pixel_array = np.asarray(pixel_array)
        if pixel_array.ndim != 2:
            raise ValueError(f"Slice pixel data must be 2D, got shape {pixel_array.shape}.")
        self.pixel_array: np.ndarray = pixel_array
        self.image_position = _as_float_tuple(image_position, 3)
        self.row_direction = _as_float_tuple(row_direction, 3)
        self.column_direction = _as_float_tuple(column_direction, 3)
        # (column spacing, row spacing), i.e. the x then y pixel size
        self.pixel_spacing = _as_float_tuple(pixel_spacing, 2)
        self.slice_thickness = float(slice_thickness) if slice_thickness is not None else None
        self.sop_instance_uid = str(sop_instance_uid or "").strip()
        self.patient_position = str(patient_position or "").strip().upper()

    @classmethod
    def from_dataset(cls, ds: Dataset, pixel_array: Optional[np.ndarray] = None) -> Optional["ImageSlice"]:
        """
        Build a slice from an image dataset.

        Args:
            ds: Decoded image dataset (CT/MR/PT).
            pixel_array: Samples to use; when omitted, ``ds.pixel_array`` is decoded.

        Returns:
            The slice, or None if no pixel samples could be obtained.
        """
        if pixel_array is None:
            try:
                pixel_array = ds.pixel_array
            except Exception:
                logger.error(f"Unable to obtain pixel data for image '{ds.get('SOPInstanceUID', 'N/A')}'.", exc_info=True)
                return None

        orientation = ds.get("ImageOrientationPatient", None)
        orientation = _as_float_tuple(orientation, 6)
        row_direction = orientation[0:3] if orientation else None
        column_direction = orientation[3:6] if orientation else None

        # PixelSpacing is (row spacing, column spacing); store as (x, y)
        pixel_spacing = _as_float_tuple(ds.get("PixelSpacing", None), 2)
        if pixel_spacing is not None:
            pixel_spacing = (pixel_spacing[1], pixel_spacing[0])

        try:
            return cls(
                pixel_array=pixel_array,
                image_position=ds.get("ImagePositionPatient", None),
                row_direction=row_direction,
                column_direction=column_direction,
                pixel_spacing=pixel_spacing,
                slice_thickness=ds.get("SliceThickness", None),
                sop_instance_uid=ds.get("SOPInstanceUID", ""),
                patient_position=ds.get("PatientPosition", ""),
            )
        except (TypeError, ValueError):
            logger.error(f"Invalid image slice data for '{ds.get('SOPInstanceUID', 'N/A')}'.", exc_info=True)
            return None

    @property
    def width(self) -> int:
        return int(self.pixel_array.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixel_array.shape[0])

    @property
    def max_value(self) -> float:
        if self.pixel_array.size == 0:
            return 0.0
        return float(np.max(self.pixel_array))

    @property
    def slice_z(self) -> Optional[float]:
        return self.image_position[2] if self.image_position else None

    @property
    def voxel_spacing(self) -> Optional[Tuple[float, float, float]]:
        """(x, y, z) spacing; z falls back to 1.0 when the slice thickness is unknown."""
        if self.pixel_spacing is None:
            return None
        return (self.pixel_spacing[0], self.pixel_spacing[1], self.slice_thickness or 1.0)

    def has_geometry(self) -> bool:
        return None not in (self.image_position, self.row_direction, self.column_direction, self.pixel_spacing)

    def get_value(self, x: int, y: int) -> float:
        """Raw sample at column x, row y."""
        return float(self.pixel_array[y, x])

    def __repr__(self) -> str:
        return (
            f"ImageSlice(uid='{self.sop_instance_uid}', size=({self.width}, {self.height}), "
            f"position={self.image_position}, spacing={self.pixel_spacing})"
        )
