from __future__ import annotations


import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, NamedTuple, Optional, Tuple


import numpy as np


if TYPE_CHECKING:
    from rtc_app.utils.image_slice import ImageSlice


logger = logging.getLogger(__name__)


RGBAColor = Tuple[int, int, int, int]
Planes = Dict[float, List["Contour"]]


class LayerKey(NamedTuple):
    """Back-reference from a contour to the layer that owns it."""
    kind: str  # "structure" or "isodose"
    owner_uid: str  # structure set record id or dose SOP instance UID
    key: int  # ROI number or isodose level


class Contour:
    """
    A single planar (or point/open) polygon of a structure or isodose layer.

    Points are stored as a flat float64 array (x0, y0, z0, x1, y1, z1, ...).
    """

    def __init__(self, layer_key: Optional[LayerKey] = None) -> None:
        self.layer_key: Optional[LayerKey] = layer_key
        self.geometric_type: Optional[str] = None
        self.contour_slab_thickness: Optional[float] = None
        self.contour_offset_vector: Optional[Tuple[float, float, float]] = None
        self.contour_points: int = 0
        self._points: np.ndarray = np.empty(0, dtype=np.float64)

    @property
    def points(self) -> np.ndarray:
        return self._points

    def set_points(self, points) -> None:
        """Set the flat coordinate sequence; its length must be a multiple of 3."""
        points_array = np.asarray(points, dtype=np.float64).ravel()
        if points_array.size % 3 != 0:
            raise ValueError(f"Contour coordinates must come in triplets, got {points_array.size} values.")
        self._points = points_array
        self.contour_points = points_array.size // 3

    def get_points_3d(self) -> np.ndarray:
        """Return the points as an (N, 3) array."""
        return self._points.reshape(-1, 3)

    @property
    def coordinate_z(self) -> Optional[float]:
        """Z of the first point, or None for an empty contour."""
        if self._points.size < 3:
            return None
        return float(self._points[2])

    def __repr__(self) -> str:
        return f"Contour(type={self.geometric_type}, points={self.contour_points}, z={self.coordinate_z})"


@dataclass
class Structure:
    roi_number: int = -1
    roi_name: str = ""
    observation_number: int = -1
    rt_roi_interpreted_type: Optional[str] = None
    roi_observation_label: Optional[str] = None
    color: RGBAColor = (0, 255, 0, 255)
    thickness: float = 0.0
    volume: Optional[float] = None
    planes: Planes = field(default_factory=dict)


@dataclass
class StructureLayer:
    structure: Structure
    visible: bool = True


@dataclass
class StructureSet:
    label: Optional[str] = None
    date: Optional[datetime] = None
    layers: Dict[int, StructureLayer] = field(default_factory=dict)

    def get(self, roi_number: int) -> Optional[StructureLayer]:
        return self.layers.get(roi_number)

    def put(self, roi_number: int, layer: StructureLayer) -> None:
        if roi_number in self.layers:
            logger.warning(f"Replacing existing structure layer for ROI number {roi_number}.")
        self.layers[roi_number] = layer

    def __len__(self) -> int:
        return len(self.layers)


@dataclass
class IsoDose:
    """An isodose level expressed as percent of the plan prescription."""
    level: int
    color: RGBAColor
    label: str
    plan_dose: float
    thickness: float = 0.0
    planes: Planes = field(default_factory=dict)

    @property
    def absolute_dose(self) -> float:
        """Threshold in cGy."""
        return (self.level * self.plan_dose) / 100.0


@dataclass
class IsoDoseLayer:
    isodose: IsoDose
    visible: bool = True


@dataclass
class Dvh:
    """Cumulative dose-volume histogram for one ROI."""
    referenced_roi_number: int = -1
    type: str = "CUMULATIVE"
    dose_unit: Optional[str] = None
    dose_type: Optional[str] = None
    dvh_volume_unit: Optional[str] = None
    dvh_dose_scaling: float = 1.0
    dvh_data: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float64))
    dvh_number_of_bins: int = -1
    # -1.0 means the value has not been calculated yet
    dvh_minimum_dose: float = -1.0
    dvh_maximum_dose: float = -1.0
    dvh_mean_dose: float = -1.0


@dataclass
class Dose:
    sop_instance_uid: str = ""
    image_position_patient: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    comment: Optional[str] = None
    dose_unit: Optional[str] = None
    dose_type: Optional[str] = None
    dose_summation_type: Optional[str] = None
    grid_frame_offset_vector: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float64))
    dose_grid_scaling: float = 1.0
    dose_max: float = 0.0
    dvhs: Dict[int, Dvh] = field(default_factory=dict)
    isodose_set: Dict[int, IsoDoseLayer] = field(default_factory=dict)
    images: List[ImageSlice] = field(default_factory=list)

    def has_consistent_grid(self) -> bool:
        """True if there is one grid frame offset per dose slice."""
        return len(self.images) > 0 and len(self.grid_frame_offset_vector) == len(self.images)

    def get_slice_z(self, index: int) -> float:
        return float(self.grid_frame_offset_vector[index]) + float(self.image_position_patient[2])

    def get_dose_plane_index_by_slice(self, z: float, tolerance: float = 0.001) -> Optional[int]:
        """Index of the dose slice lying at z, or None."""
        for i in range(min(len(self.images), len(self.grid_frame_offset_vector))):
            if abs(self.get_slice_z(i) - z) < tolerance:
                return i
        return None

    def get_dose_plane_by_slice(self, z: float, tolerance: float = 0.001) -> Optional[ImageSlice]:
        index = self.get_dose_plane_index_by_slice(z, tolerance)
        return None if index is None else self.images[index]

    def update_dose_max(self) -> None:
        for image in self.images:
            image_max = image.max_value
            if image_max > self.dose_max:
                self.dose_max = image_max


@dataclass
class Plan:
    sop_instance_uid: str = ""
    label: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    date: Optional[datetime] = None
    geometry: Optional[str] = None
    rx_dose: float = 0.0  # cGy
    doses: List[Dose] = field(default_factory=list)

    def has_associated_dose(self) -> bool:
        return bool(self.doses)

    def get_first_dose(self) -> Optional[Dose]:
        return self.doses[0] if self.doses else None

    def get_dose(self, sop_instance_uid: str) -> Optional[Dose]:
        return next((dose for dose in self.doses if dose.sop_instance_uid == sop_instance_uid), None)
