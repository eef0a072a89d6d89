from __future__ import annotations


import logging
from typing import TYPE_CHECKING, Dict, List, Optional


from rtc_app.managers.shared_state_manager import should_exit
from rtc_app.utils.dicom_utils import (
    get_contour_image_sop_uids, get_ds_float, get_ds_floats, get_ds_int, get_ds_string,
    parse_dicom_datetime,
)
from rtc_app.utils.general_utils import to_rgba
from rtc_app.utils.plane_utils import add_contour_to_planes, calculate_plane_thickness, calculate_structure_volume
from rtc_app.utils.rt_case_objects import Contour, LayerKey, Structure, StructureLayer, StructureSet


if TYPE_CHECKING:
    from pydicom import Dataset
    from rtc_app.managers.shared_state_manager import SharedStateManager
    from rtc_app.utils.rt_case_objects import Planes


logger = logging.getLogger(__name__)


def _validate_structure_set_info(ds: Dataset) -> bool:
    """Validate essential structure set information."""
    if not get_ds_string(ds, "SOPInstanceUID"):
        logger.error("Missing SOP Instance UID in RT Structure Set, so it cannot be processed.")
        return False
    if not ds.get("StructureSetROISequence", None):
        logger.error("RT Structure Set has no Structure Set ROI Sequence, so it cannot be processed.")
        return False
    return True


def _init_structures(ds: Dataset, structure_set: StructureSet) -> None:
    """Locate the name and number of each ROI."""
    for roi_ds in ds.get("StructureSetROISequence", []):
        roi_number = get_ds_int(roi_ds, "ROINumber", -1)
        if roi_number == -1:
            logger.warning("Skipping Structure Set ROI without a valid ROI Number.")
            continue
        if structure_set.get(roi_number) is not None:
            logger.warning(f"Duplicate ROI found in Structure Set for ROI Number: {roi_number}")
            continue
        structure = Structure(roi_number=roi_number, roi_name=get_ds_string(roi_ds, "ROIName", "") or "")
        structure_set.put(roi_number, StructureLayer(structure))


def _init_observations(ds: Dataset, structure_set: StructureSet) -> None:
    """Determine the type of each structure (PTV, organ, external, etc)."""
    for obs_ds in ds.get("RTROIObservationsSequence", []):
        layer = structure_set.get(get_ds_int(obs_ds, "ReferencedROINumber", -1))
        if layer is None:
            logger.warning(f"Found observation data for unknown ROI number: {obs_ds.get('ReferencedROINumber', None)}")
            continue
        layer.structure.observation_number = get_ds_int(obs_ds, "ObservationNumber", -1)
        layer.structure.rt_roi_interpreted_type = get_ds_string(obs_ds, "RTROIInterpretedType")
        layer.structure.roi_observation_label = get_ds_string(obs_ds, "ROIObservationLabel")


def _build_contour(contour_ds: Dataset, layer_key: LayerKey) -> Optional[Contour]:
    contour = Contour(layer_key)
    contour.geometric_type = get_ds_string(contour_ds, "ContourGeometricType")
    contour.contour_slab_thickness = get_ds_float(contour_ds, "ContourSlabThickness")
    offset = get_ds_floats(contour_ds, "ContourOffsetVector")
    contour.contour_offset_vector = tuple(offset) if offset and len(offset) == 3 else None

    points = get_ds_floats(contour_ds, "ContourData")
    if not points or len(points) % 3 != 0:
        logger.warning(
            f"Skipping invalid or missing ContourData for contour number {contour_ds.get('ContourNumber', 'N/A')} "
            f"of ROI {layer_key.key}."
        )
        return None
    contour.set_points(points)

    declared_points = get_ds_int(contour_ds, "NumberOfContourPoints", -1)
    if declared_points not in (-1, contour.contour_points):
        logger.debug(
            f"NumberOfContourPoints ({declared_points}) does not match ContourData "
            f"({contour.contour_points} points) for ROI {layer_key.key}; using ContourData."
        )
    return contour


def _init_contours(
    ds: Dataset,
    record_id: str,
    structure_set: StructureSet,
    contour_map: Dict[str, List[Contour]],
    fill_alpha: int,
    ss_mgr: Optional[SharedStateManager],
) -> bool:
    """The coordinate data of each ROI is stored within ROIContourSequence."""
    for roi_contour_ds in ds.get("ROIContourSequence", []):
        if should_exit(ss_mgr, "Early termination requested during ROI contour extraction."):
            return False

        roi_number = get_ds_int(roi_contour_ds, "ReferencedROINumber", -1)
        layer = structure_set.get(roi_number)
        if layer is None:
            logger.warning(f"Found contour data for unknown ROI number: {roi_number}")
            continue

        # A random color is assigned when the ROI has no valid display color
        layer.structure.color = to_rgba(roi_contour_ds.get("ROIDisplayColor", None), fill_alpha)

        planes: Planes = {}
        layer_key = LayerKey("structure", record_id, roi_number)
        for contour_ds in roi_contour_ds.get("ContourSequence", []):
            try:
                contour = _build_contour(contour_ds, layer_key)
            except Exception:
                logger.error(f"Failed to process a contour of ROI {roi_number}.", exc_info=True)
                continue
            if contour is None:
                continue

            # Cross-reference the image slices this contour was drawn on
            for sop_uid in get_contour_image_sop_uids(contour_ds):
                contour_map.setdefault(sop_uid, []).append(contour)

            add_contour_to_planes(planes, contour)

        layer.structure.planes = planes
        layer.structure.thickness = calculate_plane_thickness(planes)
        layer.structure.volume = calculate_structure_volume(planes, layer.structure.thickness)
    return True


def construct_structure_set(
    ds: Dataset,
    record_id: str,
    contour_map: Dict[str, List[Contour]],
    fill_alpha: int = 115,
    ss_mgr: Optional[SharedStateManager] = None,
) -> Optional[StructureSet]:
    """
    Build a StructureSet from an RT Structure Set dataset.

    Args:
        ds: RT Structure Set dataset.
        record_id: Identity of the source record, used in contour back-references.
        contour_map: Referenced image SOP UID -> contours index, extended in place.
        fill_alpha: Alpha channel applied to ROI display colors.
        ss_mgr: Optional shared state manager for cancellation.

    Returns:
        The structure set, or None if the dataset is unusable or processing was cancelled.
    """
    logger.info(f"Starting RT Structure Set processing for record '{record_id}'")
    if not _validate_structure_set_info(ds):
        return None

    try:
        structure_set = StructureSet(
            label=get_ds_string(ds, "StructureSetLabel"),
            date=parse_dicom_datetime(ds.get("StructureSetDate", None), ds.get("StructureSetTime", None)),
        )
        _init_structures(ds, structure_set)
        _init_observations(ds, structure_set)
        new_contour_refs: Dict[str, List[Contour]] = {}
        if not _init_contours(ds, record_id, structure_set, new_contour_refs, fill_alpha, ss_mgr):
            return None
    except Exception:
        logger.error(f"Error building structure set from record '{record_id}'!", exc_info=True)
        return None

    for sop_uid, contours in new_contour_refs.items():
        contour_map.setdefault(sop_uid, []).extend(contours)

    logger.info(f"Completed RT Structure Set processing for record '{record_id}' with {len(structure_set)} ROIs")
    return structure_set
