from __future__ import annotations


import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple


from rtc_app.data_builders.ImageBuilder import construct_dose_slices, construct_image_slice, sort_slices_by_position
from rtc_app.data_builders.RTDoseBuilder import construct_dose, update_dose
from rtc_app.data_builders.RTPlanBuilder import construct_plan
from rtc_app.data_builders.RTStructBuilder import construct_structure_set
from rtc_app.managers.config_manager import ConfigManager
from rtc_app.utils.dicom_utils import RecordKind, classify_record, get_first_ref_plan_sop_uid
from rtc_app.utils.general_utils import to_rgba
from rtc_app.utils.geometry_utils import build_pixel_lut, nearest_index, register_dose_to_image
from rtc_app.utils.isodose_utils import calculate_percentual_dose_cgy, clear_isodoses, init_isodoses


if TYPE_CHECKING:
    from pydicom import Dataset
    from rtc_app.managers.shared_state_manager import SharedStateManager
    from rtc_app.utils.geometry_utils import PixelLUT
    from rtc_app.utils.image_slice import ImageSlice
    from rtc_app.utils.rt_case_objects import Contour, Dose, Plan, Structure, StructureSet


logger = logging.getLogger(__name__)


class CaseState(Enum):
    EMPTY = "EMPTY"
    PARTIALLY_LOADED = "PARTIALLY_LOADED"
    REGISTERED = "REGISTERED"


@dataclass
class RtRecord:
    """
    One input record of a treatment case.

    Args:
        dataset: Decoded attribute set; may be None for image records that carry slices only.
        images: Pre-built slices (reference image slices, or dose grid frames).
        record_id: Identity of the record; defaults to the SOP Instance UID.
        kind: Record kind; defaults to classifying the dataset.
    """
    dataset: Optional[Dataset] = None
    images: List[ImageSlice] = field(default_factory=list)
    record_id: Optional[str] = None
    kind: Optional[RecordKind] = None

    def __post_init__(self) -> None:
        if self.kind is None:
            self.kind = classify_record(self.dataset) if self.dataset is not None else RecordKind.UNKNOWN
        if not self.record_id:
            sop_uid = str(self.dataset.get("SOPInstanceUID", "") or "").strip() if self.dataset is not None else ""
            if not sop_uid and self.images:
                sop_uid = self.images[0].sop_instance_uid
            self.record_id = sop_uid


class CaseManager:
    """Aggregates structure sets, plans, doses and images of one treatment case."""

    def __init__(
        self,
        conf_mgr: Optional[ConfigManager] = None,
        ss_mgr: Optional[SharedStateManager] = None,
        records: Optional[Iterable[RtRecord]] = None,
    ) -> None:
        """Initialize the case, optionally ingesting an initial batch of records."""
        self.conf_mgr = conf_mgr or ConfigManager()
        self.ss_mgr = ss_mgr
        self.initialize_data()
        if records is not None:
            self.ingest_records(records)

    def initialize_data(self) -> None:
        """Initialize data structures."""
        self.plans: Dict[str, Plan] = {}
        self.structures: Dict[str, StructureSet] = {}
        self.images: List[ImageSlice] = []
        self.contour_map: Dict[str, List[Contour]] = {}
        self.dose_pix_lut: Optional[PixelLUT] = None
        self._state = CaseState.EMPTY
        self._reload = False
        self._registration_version = 0

    def clear_data(self) -> None:
        """Clear all loaded data."""
        self.initialize_data()

    ### State ###
    @property
    def state(self) -> CaseState:
        return self._state

    @property
    def loaded(self) -> bool:
        """True once a dose with positive maximum has been registered against an image."""
        return self._state is CaseState.REGISTERED

    @property
    def reload(self) -> bool:
        """True when derived geometry changed and dependents have not acknowledged it yet."""
        return self._reload

    def clear_reload(self) -> None:
        self._reload = False

    @property
    def registration_version(self) -> int:
        return self._registration_version

    def is_stale(self, cached_version: int) -> bool:
        """True if a dependent's cached registration version is out of date."""
        return cached_version != self._registration_version

    @property
    def is_any_data_loaded(self) -> bool:
        return bool(self.plans or self.structures or self.images)

    def _mark_partially_loaded(self) -> None:
        if self._state is CaseState.EMPTY:
            self._state = CaseState.PARTIALLY_LOADED

    ### Ingestion ###
    def ingest_records(self, records: Iterable[RtRecord]) -> int:
        """Ingest records in order. Returns the number of records that produced or updated an entity."""
        return sum(1 for record in records if self.ingest_record(record))

    def ingest_record(self, record: RtRecord) -> bool:
        """Dispatch one record by kind."""
        if record.kind is RecordKind.STRUCTURE_SET:
            handled = self._init_structures(record)
        elif record.kind is RecordKind.PLAN:
            handled = self._init_plan(record)
        elif record.kind is RecordKind.DOSE:
            handled = self._init_dose(record)
        elif record.kind is RecordKind.IMAGE:
            handled = self._init_image(record)
        else:
            logger.error(f"Skipping record '{record.record_id}' due to unsupported kind '{record.kind}'.")
            return False

        if handled:
            self._mark_partially_loaded()
        return handled

    def _init_structures(self, record: RtRecord) -> bool:
        if record.dataset is None:
            logger.error(f"Skipping structure set record '{record.record_id}' without a dataset.")
            return False
        structure_set = construct_structure_set(
            record.dataset,
            record.record_id,
            self.contour_map,
            fill_alpha=self.conf_mgr.get_structure_fill_alpha(),
            ss_mgr=self.ss_mgr,
        )
        if structure_set is None:
            return False
        if record.record_id in self.structures:
            logger.warning(f"Replacing structure set for record '{record.record_id}'.")
        self.structures[record.record_id] = structure_set
        return True

    def _init_plan(self, record: RtRecord) -> bool:
        if record.dataset is None:
            logger.error(f"Skipping plan record '{record.record_id}' without a dataset.")
            return False
        plan = construct_plan(record.dataset)
        if plan is None:
            return False
        existing = self.plans.get(record.record_id)
        if existing is not None:
            logger.warning(f"Replacing plan for record '{record.record_id}'; keeping its {len(existing.doses)} dose(s).")
            plan.doses = existing.doses
        self.plans[record.record_id] = plan
        return True

    def _init_dose(self, record: RtRecord) -> bool:
        ds = record.dataset
        if ds is None:
            logger.error(f"Skipping dose record '{record.record_id}' without a dataset.")
            return False

        referenced_plan_uid = get_first_ref_plan_sop_uid(ds)
        plan = self._find_plan_by_sop_uid(referenced_plan_uid)
        if plan is None:
            logger.warning(
                f"Skipping dose record '{record.record_id}': referenced plan '{referenced_plan_uid}' is not loaded."
            )
            return False

        sop_instance_uid = str(ds.get("SOPInstanceUID", "") or "").strip()
        existing = plan.get_dose(sop_instance_uid)

        # An existing dose keeps its grid slices when the record carries no pixel data
        images = list(record.images)
        if not images and (existing is None or "PixelData" in ds):
            images = construct_dose_slices(ds)

        if existing is not None:
            return update_dose(existing, ds, images)

        dose = construct_dose(ds, images)
        if dose is None:
            return False
        plan.doses.append(dose)
        return True

    def _init_image(self, record: RtRecord) -> bool:
        images = list(record.images)
        if not images and record.dataset is not None:
            image = construct_image_slice(record.dataset)
            if image is not None:
                images.append(image)
        if not images:
            logger.error(f"Skipping image record '{record.record_id}' without usable pixel data.")
            return False
        self.images.extend(images)
        return True

    def _find_plan_by_sop_uid(self, sop_instance_uid: str) -> Optional[Plan]:
        if not sop_instance_uid:
            return None
        return next((plan for plan in self.plans.values() if plan.sop_instance_uid == sop_instance_uid), None)

    ### Registration ###
    def reload_patient_treatment_case(self) -> CaseState:
        """
        Register the dose grid against the image grid and build isodoses once all prerequisites exist.

        No-op while a dose grid transform is already present.
        """
        if self.dose_pix_lut is not None:
            logger.debug("Dose grid transform already present; nothing to reload.")
            return self._state
        if not self.plans or not self.images:
            logger.debug("Treatment case is missing plans or images; registration postponed.")
            return self._state

        for plan in self.plans.values():
            if not plan.has_associated_dose():
                continue

            image = self.get_middle_image()
            dose_pix_lut = self._calculate_dose_pix_lut(plan, image)
            if dose_pix_lut is None:
                logger.error(f"Unable to register the doses of plan '{plan.sop_instance_uid}' to the image grid.")
                continue
            self.dose_pix_lut = dose_pix_lut

            if not self._init_isodoses(plan):
                # No transform is kept without a complete isodose bank
                self.dose_pix_lut = None
                self._state = CaseState.PARTIALLY_LOADED
                logger.warning(f"Isodose generation failed for plan '{plan.sop_instance_uid}'; case not loaded.")
            elif all(dose.dose_max > 0 for dose in plan.doses):
                self._state = CaseState.REGISTERED
                self._registration_version += 1
                self._reload = True
                logger.info(f"Treatment case registered (version {self._registration_version}).")
            else:
                self._state = CaseState.PARTIALLY_LOADED
                logger.warning(f"Plan '{plan.sop_instance_uid}' has a dose without positive maximum; case not loaded.")
            break

        return self._state

    def _calculate_dose_pix_lut(self, plan: Plan, image: Optional[ImageSlice]) -> Optional[PixelLUT]:
        if image is None:
            return None
        if not image.patient_position:
            logger.warning(f"Image '{image.sop_instance_uid}' has no PatientPosition; assuming head first supine.")

        image_lut = build_pixel_lut(image)
        if image_lut is None:
            return None

        dose_pix_lut: Optional[PixelLUT] = None
        for dose in plan.doses:
            if not dose.images:
                logger.warning(f"Dose '{dose.sop_instance_uid}' has no grid slices; skipping registration.")
                continue
            dose_lut = build_pixel_lut(dose.images[0])
            if dose_lut is None:
                continue
            dose_pix_lut = register_dose_to_image(image_lut, image.pixel_spacing, image.patient_position, dose_lut)
        return dose_pix_lut

    def _init_isodoses(self, plan: Plan) -> bool:
        max_workers = self.conf_mgr.get_isodose_max_workers()
        start_pool = self.ss_mgr is not None and max_workers > 0 and not self.ss_mgr.has_executor
        if start_pool:
            self.ss_mgr.startup_executor(max_workers=max_workers)

        alpha = self.conf_mgr.get_isodose_fill_alpha()
        standard_levels = [(level, to_rgba(color, alpha)) for level, color in self.conf_mgr.get_isodose_levels()]
        try:
            return init_isodoses(
                plan,
                self.dose_pix_lut,
                standard_levels,
                to_rgba(self.conf_mgr.get_max_isodose_color(), alpha),
                ss_mgr=self.ss_mgr,
            )
        finally:
            if start_pool:
                self.ss_mgr.shutdown_executor()

    def reset_registration(self) -> None:
        """Explicit case reload: drop the dose grid transform and every isodose bank."""
        self.dose_pix_lut = None
        for plan in self.plans.values():
            for dose in plan.doses:
                clear_isodoses(dose)
        self._state = CaseState.PARTIALLY_LOADED if self.is_any_data_loaded else CaseState.EMPTY
        self._registration_version += 1
        self._reload = False
        logger.info("Treatment case registration reset.")

    ### Queries ###
    def get_structure_set(self, record_id: str) -> Optional[StructureSet]:
        return self.structures.get(record_id)

    def get_structure_sets(self) -> Dict[str, StructureSet]:
        return self.structures

    def get_first_structure_set_key(self) -> Optional[str]:
        return next(iter(self.structures), None)

    def get_structure(self, record_id: str, roi_number: int) -> Optional[Structure]:
        structure_set = self.structures.get(record_id)
        if structure_set is None:
            return None
        layer = structure_set.get(roi_number)
        return layer.structure if layer is not None else None

    def get_all_structures(self) -> List[Structure]:
        return [layer.structure for structure_set in self.structures.values() for layer in structure_set.layers.values()]

    def get_plan(self, record_id: str) -> Optional[Plan]:
        return self.plans.get(record_id)

    def get_plans(self) -> Dict[str, Plan]:
        return self.plans

    def get_first_plan_key(self) -> Optional[str]:
        return next(iter(self.plans), None)

    def get_first_plan(self) -> Optional[Plan]:
        return next(iter(self.plans.values()), None)

    def get_dose(self, sop_instance_uid: str) -> Optional[Dose]:
        for plan in self.plans.values():
            dose = plan.get_dose(sop_instance_uid)
            if dose is not None:
                return dose
        return None

    def get_contour_map(self) -> Dict[str, List[Contour]]:
        return self.contour_map

    def get_contours_for_image(self, sop_instance_uid: str) -> List[Contour]:
        return self.contour_map.get(sop_instance_uid, [])

    def get_images(self) -> List[ImageSlice]:
        return self.images

    def get_middle_image(self) -> Optional[ImageSlice]:
        """Middle slice in slice order (the lower one of the two central slices for an even count)."""
        if not self.images:
            return None
        ordered = sort_slices_by_position(self.images)
        return ordered[(len(ordered) - 1) // 2]

    def get_dose_pix_lut(self) -> Optional[PixelLUT]:
        return self.dose_pix_lut

    @staticmethod
    def calculate_percentual_dose_cgy(dose: float, plan_dose: float) -> Optional[float]:
        return calculate_percentual_dose_cgy(dose, plan_dose)

    def get_dose_value_for_pixel(self, plan: Plan, pixel_x: float, pixel_y: float, z: float) -> Optional[float]:
        """
        Dose value at an image pixel of the slice at z.

        Returns:
            raw sample * dose grid scaling, or None when the pixel or slice cannot be resolved.
        """
        if self.dose_pix_lut is None:
            logger.debug("No dose grid transform available for point dose lookup.")
            return None

        tolerance = self.conf_mgr.get_nearest_index_tolerance()
        x_index = nearest_index(self.dose_pix_lut[0], pixel_x, tolerance)
        y_index = nearest_index(self.dose_pix_lut[1], pixel_y, tolerance)
        if x_index is None or y_index is None:
            return None

        dose = plan.get_first_dose()
        if dose is None:
            return None
        dose_plane = dose.get_dose_plane_by_slice(z)
        if dose_plane is None:
            logger.debug(f"No dose slice found at z={z}.")
            return None
        if x_index >= dose_plane.width or y_index >= dose_plane.height:
            return None

        dose_value = dose_plane.get_value(x_index, y_index) * dose.dose_grid_scaling
        logger.debug(
            f"X: {pixel_x}, Y: {pixel_y}, Dose: {dose_value} / "
            f"{calculate_percentual_dose_cgy(dose_value, plan.rx_dose)} %"
        )
        return dose_value

    def get_case_summary(self) -> Tuple[int, int, int, int]:
        """(structure sets, plans, doses, images) counts."""
        dose_count = sum(len(plan.doses) for plan in self.plans.values())
        return len(self.structures), len(self.plans), dose_count, len(self.images)
