"""
Test pixel lookup tables, dose-to-image registration and plane helpers.
"""
from __future__ import annotations


import numpy as np
import pytest


from rtc_app.utils.geometry_utils import (
    build_pixel_lut, image_coordinates_for_dose_point, nearest_index, orientation_factors, register_dose_to_image,
)
from rtc_app.utils.image_slice import ImageSlice
from rtc_app.utils.plane_utils import calculate_plane_thickness, calculate_structure_volume
from rtc_app.utils.rt_case_objects import Contour


def _slice(width=10, height=10, position=(-10.0, -10.0, 0.0), spacing=(2.0, 2.0), **kwargs) -> ImageSlice:
    return ImageSlice(
        pixel_array=np.zeros((height, width)),
        image_position=position,
        row_direction=kwargs.get("row_direction", (1.0, 0.0, 0.0)),
        column_direction=kwargs.get("column_direction", (0.0, 1.0, 0.0)),
        pixel_spacing=spacing,
        patient_position=kwargs.get("patient_position", "HFS"),
    )


def _square(z: float, half_size: float = 5.0) -> Contour:
    contour = Contour()
    contour.geometric_type = "CLOSED_PLANAR"
    contour.set_points([
        -half_size, -half_size, z,
        half_size, -half_size, z,
        half_size, half_size, z,
        -half_size, half_size, z,
    ])
    return contour


class TestPixelLUT:
    """Test per-axis pixel to patient lookup tables."""

    def test_axis_aligned_slice(self):
        xs, ys = build_pixel_lut(_slice(width=4, height=3))
        np.testing.assert_allclose(xs, [-10.0, -8.0, -6.0, -4.0])
        np.testing.assert_allclose(ys, [-10.0, -8.0, -6.0])

    def test_flipped_orientation(self):
        xs, ys = build_pixel_lut(_slice(width=3, height=2, row_direction=(-1.0, 0.0, 0.0), column_direction=(0.0, -1.0, 0.0)))
        np.testing.assert_allclose(xs, [-10.0, -12.0, -14.0])
        np.testing.assert_allclose(ys, [-10.0, -12.0])

    def test_missing_geometry_returns_none(self):
        image = ImageSlice(np.zeros((2, 2)), image_position=None, pixel_spacing=(1.0, 1.0))
        assert build_pixel_lut(image) is None


class TestDoseRegistration:
    """Test expressing the dose grid LUT in image pixel units."""

    def test_head_first_supine(self):
        image_lut = build_pixel_lut(_slice())
        dose_lut = build_pixel_lut(_slice(width=5, height=5, spacing=(4.0, 4.0)))
        xs, ys = register_dose_to_image(image_lut, (2.0, 2.0), "HFS", dose_lut)
        np.testing.assert_allclose(xs, [0.0, 2.0, 4.0, 6.0, 8.0])
        np.testing.assert_allclose(ys, [0.0, 2.0, 4.0, 6.0, 8.0])

    def test_linear_in_dose_coordinates(self):
        image_lut = build_pixel_lut(_slice())
        dose_lut = (np.array([-10.0, 0.0, 10.0]), np.array([-10.0, 0.0, 10.0]))
        xs, ys = register_dose_to_image(image_lut, (2.0, 2.0), "HFS", dose_lut)
        assert np.allclose(np.diff(xs), np.diff(xs)[0])
        assert np.allclose(np.diff(ys), np.diff(ys)[0])

    def test_doubling_spacing_halves_scale(self):
        dose_lut = (np.array([-6.0, -2.0, 2.0]), np.array([-6.0, -2.0, 2.0]))
        fine = register_dose_to_image(build_pixel_lut(_slice()), (2.0, 2.0), "HFS", dose_lut)
        coarse = register_dose_to_image(build_pixel_lut(_slice(spacing=(4.0, 4.0))), (4.0, 4.0), "HFS", dose_lut)
        np.testing.assert_allclose(coarse[0], fine[0] / 2.0)
        np.testing.assert_allclose(coarse[1], fine[1] / 2.0)

    @pytest.mark.parametrize(
        "patient_position, x_sign, y_sign",
        [("HFS", 1, 1), ("HFP", -1, -1), ("FFS", -1, 1), ("FFP", 1, -1)],
    )
    def test_patient_position_signs(self, patient_position, x_sign, y_sign):
        image_lut = build_pixel_lut(_slice())
        dose_lut = (np.array([-6.0]), np.array([-4.0]))
        xs, ys = register_dose_to_image(image_lut, (2.0, 2.0), patient_position, dose_lut)
        assert xs[0] == pytest.approx(2.0 * x_sign)
        assert ys[0] == pytest.approx(3.0 * y_sign)

    def test_orientation_factors(self):
        assert orientation_factors("HFS") == (1, 1)
        assert orientation_factors("ffp") == (-1, -1)
        assert orientation_factors(None) == (1, 1)

    def test_invalid_spacing_returns_none(self):
        image_lut = build_pixel_lut(_slice())
        assert register_dose_to_image(image_lut, (0.0, 2.0), "HFS", image_lut) is None

    def test_dose_point_lookup(self):
        lut = (np.array([0.0, 2.0, 4.0]), np.array([1.0, 3.0]))
        assert image_coordinates_for_dose_point(2, 1, lut) == (4.0, 3.0)


class TestNearestIndex:
    """Test nearest LUT index lookup."""

    def test_exact_and_nearest(self):
        lut = [0.0, 2.0, 4.0, 6.0]
        assert nearest_index(lut, 4.0) == 2
        assert nearest_index(lut, 4.9) == 2
        assert nearest_index(lut, 5.1) == 3

    def test_tie_resolves_to_lowest_index(self):
        assert nearest_index([0.0, 2.0, 4.0], 1.0) == 0
        assert nearest_index([4.0, 2.0, 0.0], 3.0) == 0

    def test_empty_lut(self):
        assert nearest_index([], 1.0) is None
        assert nearest_index([np.nan, np.nan], 1.0) is None


class TestPlanes:
    """Test plane thickness and structure volume."""

    def test_thickness_needs_two_planes(self):
        assert calculate_plane_thickness({}) == 0.0
        assert calculate_plane_thickness({1.0: []}) == 0.0

    def test_thickness_is_minimal_gap(self):
        assert calculate_plane_thickness({0.0: [], 2.5: [], 5.0: []}) == pytest.approx(2.5)
        assert calculate_plane_thickness({5.0: [], 0.0: [], 1.5: []}) == pytest.approx(1.5)

    def test_contour_points_and_z(self):
        contour = _square(2.5)
        assert contour.contour_points == 4
        assert contour.coordinate_z == 2.5
        assert contour.get_points_3d().shape == (4, 3)
        with pytest.raises(ValueError):
            contour.set_points([1.0, 2.0])

    def test_structure_volume(self):
        planes = {z: [_square(z)] for z in (0.0, 2.5, 5.0)}
        # 100 mm^2 per plane, end planes weighted by half
        assert calculate_structure_volume(planes, 2.5) == pytest.approx(0.5)

    def test_volume_ignores_open_contours(self):
        contour = _square(0.0)
        contour.geometric_type = "OPEN_PLANAR"
        assert calculate_structure_volume({0.0: [contour], 2.5: [_square(2.5)]}, 2.5) == pytest.approx(0.125)
