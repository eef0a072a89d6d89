from __future__ import annotations


import math
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple


import cv2
import numpy as np


from rtc_app.managers.shared_state_manager import should_exit
from rtc_app.utils.plane_utils import calculate_plane_thickness
from rtc_app.utils.rt_case_objects import Contour, IsoDose, IsoDoseLayer, LayerKey


if TYPE_CHECKING:
    from concurrent.futures import Future
    from rtc_app.managers.shared_state_manager import SharedStateManager
    from rtc_app.utils.geometry_utils import PixelLUT
    from rtc_app.utils.rt_case_objects import Dose, Plan, RGBAColor


logger = logging.getLogger(__name__)


# (level, RGBA color) pairs, ordered as they are inserted into the bank
IsoDoseLevelSpec = Tuple[int, "RGBAColor"]

# Results of one dose slice: level -> contours (each an (N, 3) patient-space array)
SliceContours = Dict[int, List[np.ndarray]]


def calculate_percentual_dose_cgy(dose: float, plan_dose: float) -> Optional[float]:
    """Percent of the plan dose represented by dose (both in cGy)."""
    if not plan_dose or plan_dose <= 0:
        return None
    return (100.0 / plan_dose) * dose


def calculate_max_isodose_level(dose: Dose, rx_dose: float) -> int:
    """Percent of rxDose reached by the dose maximum, truncated to an integer."""
    if rx_dose <= 0:
        return 0
    return int(math.floor(100.0 * dose.dose_max * dose.dose_grid_scaling / rx_dose))


def find_isodose_contours(slice_samples: np.ndarray, raw_threshold: float) -> List[np.ndarray]:
    """
    Trace closed contours of the region where samples reach the threshold.

    Returns:
        List of (N, 2) integer arrays of (column, row) dose grid indices.
    """
    mask = np.ascontiguousarray(slice_samples >= raw_threshold, dtype=np.uint8)
    if not np.any(mask):
        return []
    contours, _ = cv2.findContours(
        image=mask,
        mode=cv2.RETR_TREE,
        method=cv2.CHAIN_APPROX_SIMPLE,
    )
    return [contour.reshape(-1, 2) for contour in contours if contour.size > 0]


def map_contour_to_patient(
    contour_indices: np.ndarray,
    dose_pix_lut: PixelLUT,
    image_position: Sequence[float],
    z: float,
) -> np.ndarray:
    """Map (column, row) dose grid indices through the dose->image LUT and offset by the dose position."""
    xs = dose_pix_lut[0][contour_indices[:, 0]] + image_position[0]
    ys = dose_pix_lut[1][contour_indices[:, 1]] + image_position[1]
    zs = np.full(contour_indices.shape[0], z, dtype=np.float64)
    return np.column_stack((xs, ys, zs))


def build_isodose_bank(
    dose: Dose,
    rx_dose: float,
    standard_levels: Sequence[IsoDoseLevelSpec],
    max_level_color: RGBAColor,
) -> Dict[int, IsoDoseLayer]:
    """
    Create the Max level followed by the standard levels.

    A standard level equal to the Max level replaces it. Returns an empty bank if the Max level is not positive.
    """
    bank: Dict[int, IsoDoseLayer] = {}
    max_level = calculate_max_isodose_level(dose, rx_dose)
    if max_level <= 0:
        logger.warning(
            f"Dose '{dose.sop_instance_uid}' has a non-positive maximum isodose level ({max_level}); "
            f"no isodose levels will be generated."
        )
        return bank

    bank[max_level] = IsoDoseLayer(IsoDose(max_level, max_level_color, "Max", rx_dose))
    for level, color in standard_levels:
        isodose = IsoDose(int(level), color, "", rx_dose)
        if isodose.absolute_dose <= 0:
            logger.debug(f"Skipping isodose level {level}% with non-positive threshold.")
            continue
        bank[int(level)] = IsoDoseLayer(isodose)
    return bank


def _extract_slice_contours(
    slice_samples: np.ndarray,
    raw_thresholds: Dict[int, float],
    dose_pix_lut: PixelLUT,
    image_position: Sequence[float],
    z: float,
) -> SliceContours:
    results: SliceContours = {}
    for level, raw_threshold in raw_thresholds.items():
        results[level] = [
            map_contour_to_patient(indices, dose_pix_lut, image_position, z)
            for indices in find_isodose_contours(slice_samples, raw_threshold)
        ]
    return results


def generate_isodose_contours(
    dose: Dose,
    dose_pix_lut: Optional[PixelLUT],
    ss_mgr: Optional[SharedStateManager] = None,
) -> bool:
    """
    Fill the planes of every isodose level of a dose from its grid slices.

    Slices are independent; with an executor available they run on the worker pool and are
    merged back in slice order. Cancellation is honoured between slices only.

    Returns:
        True if every slice was processed.
    """
    if dose_pix_lut is None:
        logger.error(f"No dose grid transform available; aborting isodose generation for dose '{dose.sop_instance_uid}'.")
        return False
    if not dose.has_consistent_grid():
        logger.error(
            f"Dose '{dose.sop_instance_uid}' has {len(dose.grid_frame_offset_vector)} grid frame offsets "
            f"for {len(dose.images)} slices; aborting isodose generation."
        )
        return False
    if dose.dose_grid_scaling <= 0:
        logger.error(f"Dose '{dose.sop_instance_uid}' has invalid grid scaling {dose.dose_grid_scaling}.")
        return False

    # Absolute thresholds (cGy) expressed in raw grid units
    raw_thresholds = {
        level: layer.isodose.absolute_dose / dose.dose_grid_scaling
        for level, layer in dose.isodose_set.items()
    }
    for layer in dose.isodose_set.values():
        layer.isodose.planes = {}

    lut_width, lut_height = len(dose_pix_lut[0]), len(dose_pix_lut[1])
    use_executor = ss_mgr is not None and ss_mgr.has_executor
    pending: List[Tuple[float, Future]] = []
    completed = True

    for i, image in enumerate(dose.images):
        if should_exit(ss_mgr, f"Isodose generation cancelled for dose '{dose.sop_instance_uid}' at slice {i}."):
            completed = False
            break
        if image.width > lut_width or image.height > lut_height:
            logger.error(f"Dose slice {i} of '{dose.sop_instance_uid}' is larger than the dose grid transform; skipping.")
            continue

        z = dose.get_slice_z(i)
        args = (image.pixel_array, raw_thresholds, dose_pix_lut, dose.image_position_patient, z)
        future = ss_mgr.submit_executor_action(_extract_slice_contours, *args) if use_executor else None
        if future is not None:
            pending.append((z, future))
        else:
            _merge_slice_contours(dose, z, _extract_slice_contours(*args))

    for z, future in pending:
        try:
            _merge_slice_contours(dose, z, future.result())
        except Exception:
            logger.error(f"Isodose extraction failed for slice at z={z} of dose '{dose.sop_instance_uid}'.", exc_info=True)
            completed = False

    # When finished creation of iso contours plane data calculate the plane thickness
    for layer in dose.isodose_set.values():
        layer.isodose.thickness = calculate_plane_thickness(layer.isodose.planes)

    return completed


def _merge_slice_contours(dose: Dose, z: float, slice_contours: SliceContours) -> None:
    for level, contours_3d in slice_contours.items():
        if not contours_3d:
            continue
        isodose = dose.isodose_set[level].isodose
        plane = isodose.planes.setdefault(z, [])
        for points_3d in contours_3d:
            contour = Contour(LayerKey("isodose", dose.sop_instance_uid, level))
            contour.geometric_type = "CLOSED_PLANAR"
            contour.set_points(points_3d)
            plane.append(contour)


def init_isodoses(
    plan: Plan,
    dose_pix_lut: Optional[PixelLUT],
    standard_levels: Sequence[IsoDoseLevelSpec],
    max_level_color: RGBAColor,
    ss_mgr: Optional[SharedStateManager] = None,
) -> bool:
    """
    Create and populate the isodose bank of every dose of a plan that does not have one yet.

    A dose whose contour generation fails or is cancelled has its bank cleared, so that a later
    call can generate it again.

    Returns:
        False if generation failed for any dose, True otherwise (including doses that were skipped).
    """
    if plan.rx_dose <= 0:
        logger.warning(f"Plan '{plan.sop_instance_uid}' has no prescribed dose; isodose levels cannot be computed.")
        return True

    success = True
    for dose in plan.doses:
        if dose.isodose_set:
            logger.debug(f"Isodose levels already exist for dose '{dose.sop_instance_uid}'.")
            continue
        if dose_pix_lut is None:
            logger.error(f"No dose grid transform available; skipping isodoses for dose '{dose.sop_instance_uid}'.")
            success = False
            continue

        bank = build_isodose_bank(dose, plan.rx_dose, standard_levels, max_level_color)
        if not bank:
            continue
        dose.isodose_set.update(bank)
        if generate_isodose_contours(dose, dose_pix_lut, ss_mgr):
            logger.info(f"Generated {len(bank)} isodose levels for dose '{dose.sop_instance_uid}'.")
        else:
            logger.warning(f"Isodose generation incomplete for dose '{dose.sop_instance_uid}'; discarding its levels.")
            clear_isodoses(dose)
            success = False
    return success


def clear_isodoses(dose: Dose) -> None:
    """Drop the isodose bank so that it can be generated again."""
    dose.isodose_set.clear()
