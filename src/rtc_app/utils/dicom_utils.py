from __future__ import annotations


import logging
from enum import Enum
from datetime import datetime
from typing import Any, List, Optional


import pydicom
from pydicom.uid import (
    RTStructureSetStorage, RTPlanStorage, RTIonPlanStorage, RTDoseStorage,
    CTImageStorage, EnhancedCTImageStorage, MRImageStorage, EnhancedMRImageStorage,
    PositronEmissionTomographyImageStorage,
)
from pydicom.valuerep import DA, TM


logger = logging.getLogger(__name__)


class RecordKind(Enum):
    """Kind of source record accepted by the case manager."""
    STRUCTURE_SET = "RTSTRUCT"
    PLAN = "RTPLAN"
    DOSE = "RTDOSE"
    IMAGE = "IMAGE"
    UNKNOWN = "UNKNOWN"


SOP_CLASS_TO_RECORD_KIND = {
    RTStructureSetStorage: RecordKind.STRUCTURE_SET,
    RTPlanStorage: RecordKind.PLAN,
    RTIonPlanStorage: RecordKind.PLAN,
    RTDoseStorage: RecordKind.DOSE,
    CTImageStorage: RecordKind.IMAGE,
    EnhancedCTImageStorage: RecordKind.IMAGE,
    MRImageStorage: RecordKind.IMAGE,
    EnhancedMRImageStorage: RecordKind.IMAGE,
    PositronEmissionTomographyImageStorage: RecordKind.IMAGE,
}

MODALITY_TO_RECORD_KIND = {
    "RTSTRUCT": RecordKind.STRUCTURE_SET,
    "RTPLAN": RecordKind.PLAN,
    "RTDOSE": RecordKind.DOSE,
    "CT": RecordKind.IMAGE,
    "MR": RecordKind.IMAGE,
    "PT": RecordKind.IMAGE,
}


def classify_record(ds: pydicom.Dataset) -> RecordKind:
    """Classify a dataset by SOP Class UID, falling back to Modality."""
    sop_class_uid = str(ds.get("SOPClassUID", "") or "").strip()
    if sop_class_uid in SOP_CLASS_TO_RECORD_KIND:
        return SOP_CLASS_TO_RECORD_KIND[sop_class_uid]

    modality = str(ds.get("Modality", "") or "").strip().upper()
    kind = MODALITY_TO_RECORD_KIND.get(modality, RecordKind.UNKNOWN)
    if kind is RecordKind.UNKNOWN:
        logger.warning(f"Unable to classify record with SOPClassUID '{sop_class_uid}' and Modality '{modality}'.")
    return kind


def get_first_ref_plan_sop_uid(ds: pydicom.Dataset) -> str:
    """Retrieve the first Referenced SOP Instance UID from an RT Dose dataset."""
    matched_ref_rtp_sop_uid = ""
    try:
        for plan_ds in ds.get("ReferencedRTPlanSequence", []):
            found_ref_rtp_sop_uid = str(plan_ds.get("ReferencedSOPInstanceUID", "") or "").strip()
            if found_ref_rtp_sop_uid and not matched_ref_rtp_sop_uid:
                matched_ref_rtp_sop_uid = found_ref_rtp_sop_uid
            elif found_ref_rtp_sop_uid and matched_ref_rtp_sop_uid != found_ref_rtp_sop_uid:
                logger.warning(
                    f"Multiple Referenced RT Plan SOP Instance UIDs found in the dose file! "
                    f"First one encountered: {matched_ref_rtp_sop_uid}, another one found: {found_ref_rtp_sop_uid}. "
                    f"Using the first one encountered."
                )
        if not matched_ref_rtp_sop_uid:
            logger.error("No Referenced RT Plan SOP Instance UID found in the dose file.")
    except Exception:
        logger.error("Error retrieving Referenced RT Plan SOP Instance UID.", exc_info=True)
    return matched_ref_rtp_sop_uid


def get_contour_image_sop_uids(contour_ds: pydicom.Dataset) -> List[str]:
    """Referenced SOP Instance UIDs of the image slices a contour was drawn on."""
    sop_uids: List[str] = []
    for image_ds in contour_ds.get("ContourImageSequence", []):
        sop_uid = str(image_ds.get("ReferencedSOPInstanceUID", "") or "").strip()
        if sop_uid:
            sop_uids.append(sop_uid)
    return sop_uids


def get_ds_value(ds: pydicom.Dataset, keyword: str, default: Any = None) -> Any:
    """Return the element value for keyword, or default when missing or empty."""
    value = ds.get(keyword, None)
    if value is None or value == "":
        return default
    return value


def get_ds_string(ds: pydicom.Dataset, keyword: str, default: Optional[str] = None) -> Optional[str]:
    value = get_ds_value(ds, keyword, None)
    if value is None:
        return default
    value = str(value).strip()
    return value if value else default


def get_ds_float(ds: pydicom.Dataset, keyword: str, default: Optional[float] = None) -> Optional[float]:
    value = get_ds_value(ds, keyword, None)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid numeric value '{value}' for {keyword}; using {default}.")
        return default


def get_ds_int(ds: pydicom.Dataset, keyword: str, default: Optional[int] = None) -> Optional[int]:
    value = get_ds_value(ds, keyword, None)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid integer value '{value}' for {keyword}; using {default}.")
        return default


def get_ds_floats(ds: pydicom.Dataset, keyword: str) -> Optional[List[float]]:
    """Multi-valued numeric element as a list of floats (a single value gives a one-item list)."""
    value = get_ds_value(ds, keyword, None)
    if value is None:
        return None
    if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
        value = [value]
    try:
        return [float(v) for v in value]
    except (TypeError, ValueError):
        logger.warning(f"Invalid numeric values for {keyword}: {value}")
        return None


def parse_dicom_datetime(date_value: Any, time_value: Any = None) -> Optional[datetime]:
    """Combine a DA and an optional TM value into a datetime."""
    if not date_value:
        return None
    try:
        date_part = DA(str(date_value).strip())
    except ValueError:
        logger.warning(f"Invalid DICOM date '{date_value}'.")
        return None
    if date_part is None:
        return None

    time_part = None
    if time_value:
        try:
            time_part = TM(str(time_value).strip())
        except ValueError:
            logger.warning(f"Invalid DICOM time '{time_value}'; using date only.")

    if time_part is None:
        return datetime(date_part.year, date_part.month, date_part.day)
    return datetime.combine(date_part, time_part)
