from __future__ import annotations


import logging
from typing import TYPE_CHECKING, Optional, Sequence, Tuple


import numpy as np


if TYPE_CHECKING:
    from rtc_app.utils.image_slice import ImageSlice


logger = logging.getLogger(__name__)


PixelLUT = Tuple[np.ndarray, np.ndarray]


def build_patient_affine(
    row_direction: Sequence[float],
    column_direction: Sequence[float],
    pixel_spacing: Sequence[float],
    position: Sequence[float],
) -> np.ndarray:
    """4x4 pixel (column, row) to patient transform, DICOM PS3.3 Equation C.7.6.2.1-1."""
    delta_i, delta_j = float(pixel_spacing[0]), float(pixel_spacing[1])
    return np.array(
        [
            [row_direction[0] * delta_i, column_direction[0] * delta_j, 0.0, position[0]],
            [row_direction[1] * delta_i, column_direction[1] * delta_j, 0.0, position[1]],
            [row_direction[2] * delta_i, column_direction[2] * delta_j, 0.0, position[2]],
            [0.0, 0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


def build_pixel_lut(image: ImageSlice) -> Optional[PixelLUT]:
    """
    Build per-axis pixel to patient-space lookup tables for one slice.

    Args:
        image: Slice providing direction cosines, pixel spacing and TLHC position.

    Returns:
        (xs, ys) where xs[i] is the patient x of column i and ys[j] the patient y of row j,
        or None if the slice geometry is incomplete.
    """
    if image.pixel_spacing is None or image.row_direction is None or image.column_direction is None:
        logger.error(f"Cannot build pixel lookup table: missing spacing or orientation for {image!r}.")
        return None
    if image.image_position is None:
        logger.error(f"Cannot build pixel lookup table: missing image position for {image!r}.")
        return None

    matrix = build_patient_affine(image.row_direction, image.column_direction, image.pixel_spacing, image.image_position)

    # Column indices with the row held at 0, and row indices with the column held at 0
    columns = np.zeros((4, image.width), dtype=np.float64)
    columns[0, :] = np.arange(image.width)
    columns[3, :] = 1.0
    rows = np.zeros((4, image.height), dtype=np.float64)
    rows[1, :] = np.arange(image.height)
    rows[3, :] = 1.0

    xs = (matrix @ columns)[0]
    ys = (matrix @ rows)[1]
    return xs, ys


def orientation_factors(patient_position: Optional[str]) -> Tuple[int, int]:
    """Return (prone, feet_first) sign factors for a PatientPosition value such as 'HFS' or 'FFP'."""
    position = (patient_position or "").strip().lower()
    prone = -1 if "p" in position else 1
    feet_first = -1 if "ff" in position else 1
    return prone, feet_first


def register_dose_to_image(
    image_lut: PixelLUT,
    image_spacing: Sequence[float],
    patient_position: Optional[str],
    dose_lut: PixelLUT,
) -> Optional[PixelLUT]:
    """
    Express the dose grid LUT in image pixel units.

    x' = (dose_x - image_x0) * prone * feet_first / spacing_x
    y' = (dose_y - image_y0) * prone / spacing_y
    """
    image_xs, image_ys = image_lut
    dose_xs, dose_ys = dose_lut
    if len(image_xs) == 0 or len(image_ys) == 0:
        logger.error("Cannot register dose grid: image lookup table is empty.")
        return None
    if image_spacing is None or len(image_spacing) < 2 or not image_spacing[0] or not image_spacing[1]:
        logger.error(f"Cannot register dose grid: invalid image spacing {image_spacing}.")
        return None

    prone, feet_first = orientation_factors(patient_position)
    spacing_x, spacing_y = float(image_spacing[0]), float(image_spacing[1])

    xs = (np.asarray(dose_xs, dtype=np.float64) - image_xs[0]) * prone * feet_first / spacing_x
    ys = (np.asarray(dose_ys, dtype=np.float64) - image_ys[0]) * prone / spacing_y
    return xs, ys


def image_coordinates_for_dose_point(dose_x: int, dose_y: int, lut: PixelLUT) -> Tuple[float, float]:
    return float(lut[0][dose_x]), float(lut[1][dose_y])


def nearest_index(lut: Sequence[float], value: float, tolerance: float = 0.001) -> Optional[int]:
    """
    Index of the LUT entry closest to value.

    The first index whose distance lies within tolerance of the minimum distance wins,
    so exact ties resolve to the lowest index. Returns None if nothing qualifies.
    """
    values = np.asarray(lut, dtype=np.float64)
    if values.size == 0:
        return None
    distances = np.abs(values - value)
    if np.all(np.isnan(distances)):
        return None
    min_distance = np.nanmin(distances)
    candidates = np.flatnonzero(np.abs(distances - min_distance) < tolerance)
    if candidates.size == 0:
        return None
    return int(candidates[0])
