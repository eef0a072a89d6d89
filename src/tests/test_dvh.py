"""
Test DVH parsing and cumulative normalisation.
"""
from __future__ import annotations


import numpy as np
import pytest
from pydicom.dataset import Dataset


from rtc_app.utils.dvh_utils import (
    build_dvh, calculate_dvh_statistics, convert_differential_to_cumulative, extract_cumulative_dvh_data,
    get_dose_at_volume, get_volume_at_dose,
)


def _dvh_item(dvh_type: str, data, roi_numbers=(5,), scaling: float = 1.0) -> Dataset:
    item = Dataset()
    item.DVHType = dvh_type
    item.DoseUnits = "GY"
    item.DoseType = "PHYSICAL"
    item.DVHDoseScaling = scaling
    item.DVHVolumeUnits = "CM3"
    item.DVHNumberOfBins = len(data) // 2
    item.DVHData = list(data)
    refs = []
    for roi_number in roi_numbers:
        ref = Dataset()
        ref.ReferencedROINumber = roi_number
        ref.DVHROIContributionType = "INCLUDED"
        refs.append(ref)
    item.DVHReferencedROISequence = refs
    return item


class TestCumulativeDVH:
    """Test reading DVHs that are already cumulative."""

    def test_keeps_every_second_sample(self):
        data = extract_cumulative_dvh_data([1.0, 100.0, 1.0, 80.0, 1.0, 50.0, 1.0, 0.0])
        np.testing.assert_allclose(data, [100.0, 80.0, 50.0, 0.0])

    def test_odd_length_is_rejected(self):
        assert extract_cumulative_dvh_data([1.0, 100.0, 1.0]) is None

    def test_build_dvh(self):
        dvh = build_dvh(_dvh_item("CUMULATIVE", [1.0, 100.0, 1.0, 80.0, 1.0, 50.0, 1.0, 0.0]))
        assert dvh.referenced_roi_number == 5
        assert dvh.type == "CUMULATIVE"
        assert dvh.dvh_number_of_bins == 4
        assert dvh.dvh_minimum_dose == -1.0
        np.testing.assert_allclose(dvh.dvh_data, [100.0, 80.0, 50.0, 0.0])

    def test_requires_exactly_one_referenced_roi(self):
        assert build_dvh(_dvh_item("CUMULATIVE", [1.0, 1.0], roi_numbers=(1, 2))) is None
        assert build_dvh(_dvh_item("CUMULATIVE", [1.0, 1.0], roi_numbers=())) is None


class TestDifferentialDVH:
    """Test differential to cumulative conversion."""

    DIFFERENTIAL = [1.0, 10.0, 1.0, 20.0, 1.0, 30.0]

    def test_conversion_is_non_increasing(self):
        data = convert_differential_to_cumulative(self.DIFFERENTIAL)
        assert np.all(np.diff(data) <= 0)
        assert data[0] == pytest.approx(60.0)
        assert data[-1] == pytest.approx(0.0)

    def test_one_cgy_bins(self):
        data = convert_differential_to_cumulative(self.DIFFERENTIAL)
        # 3 bins of 1 Gy span 0..300 cGy inclusive
        assert data.size == 301
        assert data[100] == pytest.approx(50.0)
        assert data[200] == pytest.approx(30.0)
        assert data[250] == pytest.approx(15.0)

    def test_dose_scaling_applies_to_bin_widths(self):
        data = convert_differential_to_cumulative(self.DIFFERENTIAL, dose_scaling=0.5)
        assert data.size == 151
        assert data[100] == pytest.approx(30.0)

    def test_float_bin_sums_keep_their_last_bin(self):
        # Ten 0.1 Gy bins sum to just under 100 cGy
        data = convert_differential_to_cumulative([0.1, 1.0] * 10)
        assert data.size == 101
        assert data[0] == pytest.approx(10.0)
        assert data[-1] == pytest.approx(0.0)

    def test_first_bin_width_is_rounded(self):
        data = convert_differential_to_cumulative([0.29, 4.0, 0.71, 6.0])
        # 29 cGy of padding, then the interpolated curve from 29 to 100 cGy
        assert data.size == 101
        np.testing.assert_allclose(data[:29], 10.0)
        assert data[29] == pytest.approx(6.0)

    def test_odd_length_is_rejected(self):
        assert convert_differential_to_cumulative([1.0, 10.0, 1.0]) is None

    def test_build_dvh_is_cumulative(self):
        dvh = build_dvh(_dvh_item("DIFFERENTIAL", self.DIFFERENTIAL))
        assert dvh.type == "CUMULATIVE"
        assert dvh.dvh_number_of_bins == 301
        assert np.all(np.diff(dvh.dvh_data) <= 0)


class TestDVHQueries:
    """Test dose/volume constraint lookups and statistics."""

    def _dvh(self):
        return build_dvh(_dvh_item("CUMULATIVE", [1.0, 100.0, 1.0, 80.0, 1.0, 50.0, 1.0, 0.0]))

    def test_volume_at_dose(self):
        dvh = self._dvh()
        assert get_volume_at_dose(dvh, 1) == pytest.approx(80.0)
        assert get_volume_at_dose(dvh, 1.5) == pytest.approx(65.0)
        assert get_volume_at_dose(dvh, 10) == pytest.approx(0.0)

    def test_dose_at_volume(self):
        assert get_dose_at_volume(self._dvh(), 52.0) == 2

    def test_statistics(self):
        dvh = self._dvh()
        assert calculate_dvh_statistics(dvh)
        assert dvh.dvh_minimum_dose == 0.0
        assert dvh.dvh_maximum_dose == 2.0
        # (0*20 + 1*30 + 2*50) / 100
        assert dvh.dvh_mean_dose == pytest.approx(1.3)

    def test_statistics_keep_stored_values(self):
        dvh = self._dvh()
        dvh.dvh_mean_dose = 42.0
        calculate_dvh_statistics(dvh)
        assert dvh.dvh_mean_dose == 42.0
