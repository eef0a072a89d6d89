from __future__ import annotations


import logging
from typing import TYPE_CHECKING, Optional, Sequence


import numpy as np


from rtc_app.utils.rt_case_objects import Dvh


if TYPE_CHECKING:
    from pydicom import Dataset


logger = logging.getLogger(__name__)


GY_TO_CGY_FACTOR = 100


def extract_cumulative_dvh_data(data: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    """
    Extract the volume samples from a cumulative DVHData sequence.

    DVHData interleaves a dose bin width ("filler") with its value, so every second sample is kept.
    """
    if data is None:
        return None
    data_array = np.asarray(data, dtype=np.float64).ravel()
    if data_array.size == 0 or data_array.size % 2 != 0:
        logger.error(f"Cumulative DVH data must contain (dose, volume) pairs, got {data_array.size} values.")
        return None
    return data_array[1::2].copy()


def convert_differential_to_cumulative(
    data: Optional[Sequence[float]],
    dose_scaling: float = 1.0,
) -> Optional[np.ndarray]:
    """
    Convert a differential DVH to cumulative volumes on 1 cGy bins.

    Args:
        data: DVHData as (dose bin width [Gy], volume) pairs.
        dose_scaling: DVHDoseScaling applied to the bin widths.

    Returns:
        Array where index i is the volume receiving at least i cGy, or None for malformed data.
    """
    if data is None:
        return None
    data_array = np.asarray(data, dtype=np.float64).ravel()
    if data_array.size == 0 or data_array.size % 2 != 0:
        logger.error(f"Differential DVH data must contain (dose, volume) pairs, got {data_array.size} values.")
        return None

    dose = data_array[0::2] * dose_scaling
    volume = data_array[1::2]

    # Cumulative volume at the start of each bin is everything from this bin to the end
    cum_volume = np.cumsum(volume[::-1])[::-1]
    # Cumulative dose at the start of each bin is the sum of the preceding bin widths, in cGy
    cum_dose = np.concatenate(([0.0], np.cumsum(dose)[:-1])) * GY_TO_CGY_FACTOR

    # Close the curve at the upper edge of the last bin
    total_dose = float(np.sum(dose)) * GY_TO_CGY_FACTOR
    cum_dose = np.append(cum_dose, total_dose)
    cum_volume = np.append(cum_volume, 0.0)

    # Nearest integer cGy; float sums such as 10 x 0.1 Gy fall just below it
    min_dose = int(round(float(dose[0]) * GY_TO_CGY_FACTOR))
    max_dose = int(round(total_dose))
    max_volume = float(np.sum(volume))

    if max_dose < min_dose:
        logger.error(f"Differential DVH has an invalid dose range ({min_dose} to {max_dose} cGy).")
        return None

    # Doses below the first observed bin are received by the whole volume
    padding = np.full(min_dose, max_volume, dtype=np.float64)

    interp_dose = np.arange(min_dose, max_dose + 1, dtype=np.float64)
    interp_volume = np.interp(interp_dose, cum_dose, cum_volume)

    return np.concatenate((padding, interp_volume))


def build_dvh(dvh_ds: Dataset) -> Optional[Dvh]:
    """
    Build a cumulative Dvh from one DVHSequence item.

    Returns None if the item does not reference exactly one ROI.
    """
    ref_roi_seq = dvh_ds.get("DVHReferencedROISequence", None)
    if not ref_roi_seq or len(ref_roi_seq) != 1:
        logger.warning("Skipping DVH item without exactly one DVH Referenced ROI.")
        return None

    try:
        roi_number = int(ref_roi_seq[0].get("ReferencedROINumber", -1))
    except (TypeError, ValueError):
        roi_number = -1
    logger.debug(f"Found DVH for ROI: {roi_number}")

    dvh = Dvh(referenced_roi_number=roi_number)
    dvh.dose_unit = dvh_ds.get("DoseUnits", None)
    dvh.dose_type = dvh_ds.get("DoseType", None)
    dvh.dvh_volume_unit = dvh_ds.get("DVHVolumeUnits", None)
    dvh.dvh_dose_scaling = _get_float(dvh_ds, "DVHDoseScaling", 1.0)
    dvh.dvh_minimum_dose = _get_float(dvh_ds, "DVHMinimumDose", -1.0)
    dvh.dvh_maximum_dose = _get_float(dvh_ds, "DVHMaximumDose", -1.0)
    dvh.dvh_mean_dose = _get_float(dvh_ds, "DVHMeanDose", -1.0)

    dvh_type = str(dvh_ds.get("DVHType", "") or "").strip().upper()
    data = dvh_ds.get("DVHData", None)

    if dvh_type == "DIFFERENTIAL":
        cumulative = convert_differential_to_cumulative(data, dvh.dvh_dose_scaling)
        if cumulative is not None:
            dvh.dvh_data = cumulative
            dvh.dvh_number_of_bins = int(cumulative.size)
        else:
            logger.error(f"Unable to convert differential DVH for ROI {roi_number}; DVH data left empty.")
    else:
        cumulative = extract_cumulative_dvh_data(data)
        if cumulative is not None:
            dvh.dvh_data = cumulative
        else:
            logger.error(f"Invalid cumulative DVH data for ROI {roi_number}; DVH data left empty.")
        try:
            dvh.dvh_number_of_bins = int(dvh_ds.get("DVHNumberOfBins", -1))
        except (TypeError, ValueError):
            dvh.dvh_number_of_bins = -1

    # Always cumulative - differential was converted
    dvh.type = "CUMULATIVE"
    return dvh


def get_volume_at_dose(dvh: Dvh, dose_cgy: float) -> Optional[float]:
    """Volume receiving at least dose_cgy (linear between bins), None if the DVH is empty."""
    if dvh.dvh_data.size == 0:
        return None
    bins = np.arange(dvh.dvh_data.size, dtype=np.float64)
    return float(np.interp(dose_cgy, bins, dvh.dvh_data, right=0.0))


def get_dose_at_volume(dvh: Dvh, volume: float) -> Optional[int]:
    """Dose bin (cGy) whose cumulative volume is closest to the requested volume."""
    if dvh.dvh_data.size == 0:
        return None
    return int(np.argmin(np.fabs(dvh.dvh_data - volume)))


def calculate_dvh_statistics(dvh: Dvh) -> bool:
    """
    Fill min/max/mean dose (cGy) for any statistic still holding the -1 sentinel.

    Returns False when the DVH has no usable data.
    """
    data = dvh.dvh_data
    if data.size == 0 or data[0] <= 0:
        return False

    # Differential volume per 1 cGy bin from the cumulative curve
    differential = np.clip(-np.diff(np.append(data, 0.0)), 0.0, None)
    total = float(np.sum(differential))
    if total <= 0:
        return False
    occupied = np.flatnonzero(differential)

    if dvh.dvh_minimum_dose < 0:
        dvh.dvh_minimum_dose = float(occupied[0])
    if dvh.dvh_maximum_dose < 0:
        dvh.dvh_maximum_dose = float(occupied[-1])
    if dvh.dvh_mean_dose < 0:
        dvh.dvh_mean_dose = float(np.dot(np.arange(differential.size), differential) / total)
    return True


def _get_float(ds: Dataset, keyword: str, default: float) -> float:
    value = ds.get(keyword, None)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {keyword} value '{value}'; using {default}.")
        return default
