from __future__ import annotations


import logging
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional


import numpy as np


if TYPE_CHECKING:
    from rtc_app.utils.rt_case_objects import Contour


logger = logging.getLogger(__name__)


def calculate_plane_thickness(planes: Mapping[float, List[Contour]]) -> float:
    """
    Return the minimal distance between two neighbouring planes.

    Keys are used as-is (no snapping), so z values must be computed consistently upstream.
    Returns 0.0 when fewer than two planes exist.
    """
    z_values = sorted(planes.keys())
    if len(z_values) < 2:
        return 0.0

    thickness: Optional[float] = None
    for previous_z, current_z in zip(z_values, z_values[1:]):
        delta = current_z - previous_z
        if delta > 0 and (thickness is None or delta < thickness):
            thickness = delta

    return float(thickness) if thickness is not None else 0.0


def add_contour_to_planes(planes: Dict[float, List[Contour]], contour: Contour) -> Optional[float]:
    """File a contour under its own z coordinate. Returns the key used, or None for empty contours."""
    z = contour.coordinate_z
    if z is None:
        return None
    planes.setdefault(z, []).append(contour)
    return z


def calculate_polygon_area(points_3d: np.ndarray) -> float:
    """Planar polygon area (shoelace formula) using x and y only."""
    if points_3d.shape[0] < 3:
        return 0.0
    x = points_3d[:, 0]
    y = points_3d[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def calculate_structure_volume(planes: Mapping[float, List[Contour]], thickness: float) -> float:
    """
    Approximate structure volume in cm^3 from its planar contours.

    End planes contribute half of the plane thickness.
    """
    if not planes or thickness <= 0:
        return 0.0

    z_values = sorted(planes.keys())
    last_index = len(z_values) - 1
    volume_mm3 = 0.0
    for index, z in enumerate(z_values):
        plane_area = sum(
            calculate_polygon_area(contour.get_points_3d())
            for contour in planes[z]
            if contour.geometric_type in (None, "CLOSED_PLANAR")
        )
        weight = 0.5 if index in (0, last_index) else 1.0
        volume_mm3 += plane_area * thickness * weight

    # DICOM coordinates are in mm
    return volume_mm3 / 1000.0
