from __future__ import annotations


import logging
from typing import List, Optional, TYPE_CHECKING


import numpy as np


from rtc_app.utils.dicom_utils import get_ds_float, get_ds_floats, get_ds_string
from rtc_app.utils.dvh_utils import build_dvh
from rtc_app.utils.rt_case_objects import Dose


if TYPE_CHECKING:
    from pydicom import Dataset
    from rtc_app.utils.image_slice import ImageSlice


logger = logging.getLogger(__name__)


# Commonly encountered DICOM RT Dose parameters; others are kept but reported
SUPPORTED_DOSE_SUMMATION_TYPES = {"PLAN", "BEAM", "FRACTION", "MULTI_PLAN", "PLAN_SUM", "RECORD"}
SUPPORTED_DOSE_UNITS = {"GY", "RELATIVE"}
SUPPORTED_DOSE_TYPES = {"PHYSICAL", "EFFECTIVE", "ERROR"}


def _validate_dose_dataset(ds: Dataset) -> bool:
    """Validate essential RT Dose dataset attributes."""
    if not get_ds_string(ds, "SOPInstanceUID"):
        logger.error("Missing SOP Instance UID in RT Dose, so it cannot be processed.")
        return False

    dose_summation_type = (get_ds_string(ds, "DoseSummationType", "") or "").upper()
    if dose_summation_type not in SUPPORTED_DOSE_SUMMATION_TYPES:
        logger.warning(f"Unexpected DoseSummationType '{dose_summation_type}'.")

    dose_units = (get_ds_string(ds, "DoseUnits", "") or "").upper()
    if dose_units not in SUPPORTED_DOSE_UNITS:
        logger.warning(f"Unexpected DoseUnits '{dose_units}'.")

    dose_type = (get_ds_string(ds, "DoseType", "") or "").upper()
    if dose_type not in SUPPORTED_DOSE_TYPES:
        logger.warning(f"Unexpected DoseType '{dose_type}'.")

    dose_grid_scaling = get_ds_float(ds, "DoseGridScaling")
    if dose_grid_scaling is not None and dose_grid_scaling <= 0:
        logger.error(f"Invalid DoseGridScaling '{dose_grid_scaling}'")
        return False

    return True


def _read_dvhs(ds: Dataset, dose: Dose) -> None:
    """Check whether DVHs are included and normalise each one to cumulative form."""
    for dvh_ds in ds.get("DVHSequence", []):
        try:
            dvh = build_dvh(dvh_ds)
        except Exception:
            logger.error(f"Failed to read a DVH of dose '{dose.sop_instance_uid}'.", exc_info=True)
            continue
        if dvh is not None:
            dose.dvhs[dvh.referenced_roi_number] = dvh


def _apply_dataset(ds: Dataset, dose: Dose) -> None:
    position = get_ds_floats(ds, "ImagePositionPatient")
    if position and len(position) == 3:
        dose.image_position_patient = (position[0], position[1], position[2])
    else:
        logger.warning(f"Dose '{dose.sop_instance_uid}' has no valid ImagePositionPatient; using the origin.")

    dose.comment = get_ds_string(ds, "DoseComment")
    dose.dose_unit = get_ds_string(ds, "DoseUnits")
    dose.dose_type = get_ds_string(ds, "DoseType")
    dose.dose_summation_type = get_ds_string(ds, "DoseSummationType")

    scaling = get_ds_float(ds, "DoseGridScaling")
    if scaling is None:
        logger.warning(f"Dose '{dose.sop_instance_uid}' has no DoseGridScaling; assuming 1.0.")
        scaling = 1.0
    dose.dose_grid_scaling = scaling


def _apply_images(ds: Dataset, dose: Dose, images: List[ImageSlice]) -> None:
    dose.images = list(images)
    offsets = get_ds_floats(ds, "GridFrameOffsetVector")
    if offsets is None and len(dose.images) == 1:
        offsets = [0.0]
    dose.grid_frame_offset_vector = np.asarray(offsets or [], dtype=np.float64)
    if not dose.has_consistent_grid():
        logger.warning(
            f"Dose '{dose.sop_instance_uid}' has {len(dose.grid_frame_offset_vector)} grid frame offsets "
            f"for {len(dose.images)} slices."
        )
    dose.update_dose_max()


def construct_dose(ds: Dataset, images: List[ImageSlice]) -> Optional[Dose]:
    """
    Build a Dose (with its DVHs) from an RT Dose dataset and its grid slices.

    Returns:
        The dose, or None if the dataset is invalid.
    """
    if not _validate_dose_dataset(ds):
        return None

    dose = Dose(sop_instance_uid=get_ds_string(ds, "SOPInstanceUID"))
    try:
        _apply_dataset(ds, dose)
        _apply_images(ds, dose, images)
        _read_dvhs(ds, dose)
    except Exception:
        logger.error(f"Failed to create RT Dose '{dose.sop_instance_uid}'.", exc_info=True)
        return None

    logger.info(
        f"Created RT Dose '{dose.sop_instance_uid}': {len(dose.images)} slices, "
        f"max {dose.dose_max} (scaling {dose.dose_grid_scaling}), {len(dose.dvhs)} DVHs"
    )
    return dose


def update_dose(dose: Dose, ds: Dataset, images: List[ImageSlice]) -> bool:
    """
    Refresh an existing Dose from a re-encountered record.

    Grid slices are replaced only when the record carries some; DVHs are merged by ROI number.
    """
    if not _validate_dose_dataset(ds):
        return False
    try:
        _apply_dataset(ds, dose)
        if images:
            _apply_images(ds, dose, images)
        _read_dvhs(ds, dose)
    except Exception:
        logger.error(f"Failed to update RT Dose '{dose.sop_instance_uid}'.", exc_info=True)
        return False
    logger.info(f"Updated RT Dose '{dose.sop_instance_uid}'.")
    return True
