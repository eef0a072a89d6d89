from __future__ import annotations


import logging
from typing import TYPE_CHECKING, Optional


from rtc_app.utils.dicom_utils import get_ds_float, get_ds_int, get_ds_string, parse_dicom_datetime
from rtc_app.utils.rt_case_objects import Plan


if TYPE_CHECKING:
    from pydicom import Dataset


logger = logging.getLogger(__name__)


class RTConstants:
    """Constants (e.g., ones used as values for DICOM tags)."""

    # Dose reference structure types
    DOSE_REF_POINT = "POINT"
    DOSE_REF_VOLUME = "VOLUME"
    DOSE_REF_COORDINATES = "COORDINATES"
    DOSE_REF_SITE = "SITE"

    # Dose conversion factor (Gy to cGy)
    GY_TO_CGY_FACTOR = 100


def _rx_dose_from_dose_references(ds: Dataset, plan: Plan) -> None:
    """Prescribed dose (cGy) from the Dose Reference Sequence."""
    for dose_ref_ds in ds.get("DoseReferenceSequence", []):
        structure_type = (get_ds_string(dose_ref_ds, "DoseReferenceStructureType", "") or "").upper()
        target_dose = get_ds_float(dose_ref_ds, "TargetPrescriptionDose")

        if structure_type == RTConstants.DOSE_REF_POINT:
            logger.info("Not supported: dose reference point specified as ROI")

        elif structure_type in (RTConstants.DOSE_REF_VOLUME, RTConstants.DOSE_REF_COORDINATES):
            # TargetPrescriptionDose is in Gy
            if target_dose is not None:
                plan.rx_dose = target_dose * RTConstants.GY_TO_CGY_FACTOR

        elif structure_type == RTConstants.DOSE_REF_SITE:
            description = get_ds_string(dose_ref_ds, "DoseReferenceDescription")
            if description:
                plan.name = f"{plan.name} - {description}" if plan.name else description
            if target_dose is not None:
                rx_dose = target_dose * RTConstants.GY_TO_CGY_FACTOR
                if rx_dose > plan.rx_dose:
                    plan.rx_dose = rx_dose

        else:
            logger.warning(f"Unknown Dose Reference Structure Type '{structure_type}'.")


def _rx_dose_from_fraction_groups(ds: Dataset, plan: Plan) -> None:
    """Prescribed dose (cGy) as the sum of beam doses times the planned fractions of the first fraction group."""
    for fraction_group_ds in ds.get("FractionGroupSequence", []):
        fractions = get_ds_int(fraction_group_ds, "NumberOfFractionsPlanned")
        if fractions is not None:
            for ref_beam_ds in fraction_group_ds.get("ReferencedBeamSequence", []):
                beam_dose = get_ds_float(ref_beam_ds, "BeamDose")
                if beam_dose is not None:
                    plan.rx_dose += beam_dose * fractions * RTConstants.GY_TO_CGY_FACTOR
        # Only first one
        break


def construct_plan(ds: Dataset) -> Optional[Plan]:
    """
    Build a Plan from an RT Plan dataset.

    The prescription comes from the Dose Reference Sequence when available, otherwise from
    the first Fraction Group Sequence item. It stays 0.0 when neither defines it.
    """
    sop_instance_uid = get_ds_string(ds, "SOPInstanceUID")
    if not sop_instance_uid:
        logger.error("Missing SOP Instance UID in RT Plan, so it cannot be processed.")
        return None

    try:
        plan = Plan(
            sop_instance_uid=sop_instance_uid,
            label=get_ds_string(ds, "RTPlanLabel"),
            name=get_ds_string(ds, "RTPlanName"),
            description=get_ds_string(ds, "RTPlanDescription"),
            date=parse_dicom_datetime(ds.get("RTPlanDate", None), ds.get("RTPlanTime", None)),
            geometry=get_ds_string(ds, "RTPlanGeometry"),
            rx_dose=0.0,
        )

        _rx_dose_from_dose_references(ds, plan)
        if plan.rx_dose == 0.0:
            _rx_dose_from_fraction_groups(ds, plan)
    except Exception:
        logger.error(f"Error building plan '{sop_instance_uid}'.", exc_info=True)
        return None

    if plan.rx_dose < 0:
        logger.warning(f"Negative prescribed dose computed for plan '{sop_instance_uid}'; resetting to 0.")
        plan.rx_dose = 0.0

    logger.info(f"Created RT Plan '{plan.label}' ({sop_instance_uid}) with prescribed dose {plan.rx_dose:.1f} cGy")
    return plan
