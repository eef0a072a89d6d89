from __future__ import annotations


import logging
from typing import List, Optional, Tuple, TYPE_CHECKING


import numpy as np
import SimpleITK as sitk


from rtc_app.utils.dicom_utils import get_ds_floats
from rtc_app.utils.image_slice import ImageSlice


if TYPE_CHECKING:
    import numpy.typing as npt
    from pydicom import Dataset


logger = logging.getLogger(__name__)


def _get_pixel_frames(ds: Dataset, pixel_array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Return pixel samples as (frames, rows, cols)."""
    if pixel_array is None:
        try:
            pixel_array = ds.pixel_array
        except Exception:
            logger.error(f"Unable to decode pixel data for '{ds.get('SOPInstanceUID', 'N/A')}'.", exc_info=True)
            return None
    frames = np.asarray(pixel_array)
    if frames.ndim == 2:
        frames = frames[np.newaxis, ...]
    if frames.ndim != 3:
        logger.error(f"Unsupported pixel data shape {frames.shape} for '{ds.get('SOPInstanceUID', 'N/A')}'.")
        return None
    return frames


def construct_image_slice(ds: Dataset, pixel_array: Optional[np.ndarray] = None) -> Optional[ImageSlice]:
    """Build one reference image slice from an image dataset."""
    image = ImageSlice.from_dataset(ds, pixel_array)
    if image is None:
        return None
    if not image.has_geometry():
        logger.warning(f"Image '{image.sop_instance_uid}' is missing geometry attributes; registration may fail.")
    return image


def construct_dose_slices(ds: Dataset, pixel_array: Optional[np.ndarray] = None) -> List[ImageSlice]:
    """
    Split a (multi-frame) RT Dose grid into one slice per frame.

    Frame k is positioned at ImagePositionPatient shifted along z by GridFrameOffsetVector[k].
    """
    frames = _get_pixel_frames(ds, pixel_array)
    if frames is None:
        return []

    template = ImageSlice.from_dataset(ds, frames[0])
    if template is None:
        return []

    offsets = get_ds_floats(ds, "GridFrameOffsetVector") or [0.0] * frames.shape[0]
    if len(offsets) != frames.shape[0]:
        logger.warning(
            f"GridFrameOffsetVector has {len(offsets)} values for {frames.shape[0]} dose frames "
            f"in '{template.sop_instance_uid}'."
        )

    slices: List[ImageSlice] = []
    for k in range(frames.shape[0]):
        position = None
        if template.image_position is not None and k < len(offsets):
            x0, y0, z0 = template.image_position
            position = (x0, y0, z0 + offsets[k])
        slices.append(
            ImageSlice(
                pixel_array=frames[k],
                image_position=position,
                row_direction=template.row_direction,
                column_direction=template.column_direction,
                pixel_spacing=template.pixel_spacing,
                slice_thickness=template.slice_thickness,
                sop_instance_uid=template.sop_instance_uid,
                patient_position=template.patient_position,
            )
        )
    return slices


def construct_slices_from_sitk(
    sitk_image: sitk.Image,
    patient_position: str = "",
    sop_instance_uids: Optional[List[str]] = None,
) -> List[ImageSlice]:
    """
    Split a 3D SimpleITK volume into axial slices that keep its patient geometry.

    Args:
        sitk_image: Volume as produced by a SimpleITK series reader.
        patient_position: PatientPosition of the series (e.g. 'HFS').
        sop_instance_uids: Optional per-slice SOP Instance UIDs, in volume order.
    """
    if not isinstance(sitk_image, sitk.Image) or sitk_image.GetDimension() != 3:
        logger.error(f"Expected a 3D SimpleITK image, got {type(sitk_image).__name__}.")
        return []

    volume = sitk.GetArrayFromImage(sitk_image)  # (slices, rows, cols)
    direction = sitk_image.GetDirection()
    spacing = sitk_image.GetSpacing()
    row_direction = (direction[0], direction[3], direction[6])
    column_direction = (direction[1], direction[4], direction[7])

    if sop_instance_uids is not None and len(sop_instance_uids) != volume.shape[0]:
        logger.warning(f"Got {len(sop_instance_uids)} SOP Instance UIDs for {volume.shape[0]} slices; ignoring them.")
        sop_instance_uids = None

    slices: List[ImageSlice] = []
    for k in range(volume.shape[0]):
        slices.append(
            ImageSlice(
                pixel_array=volume[k],
                image_position=sitk_image.TransformIndexToPhysicalPoint((0, 0, k)),
                row_direction=row_direction,
                column_direction=column_direction,
                pixel_spacing=(spacing[0], spacing[1]),
                slice_thickness=spacing[2],
                sop_instance_uid=sop_instance_uids[k] if sop_instance_uids else "",
                patient_position=patient_position,
            )
        )
    logger.info(f"Split SimpleITK volume of size {sitk_image.GetSize()} into {len(slices)} slices.")
    return slices


def sort_slices_by_position(slices: List[ImageSlice]) -> List[ImageSlice]:
    """Sort slices along the slice normal; slices without geometry keep their order at the end."""
    located: List[Tuple[float, int, ImageSlice]] = []
    unlocated: List[ImageSlice] = []
    for index, image in enumerate(slices):
        if image.row_direction is None or image.column_direction is None or image.image_position is None:
            unlocated.append(image)
            continue
        normal_vector: npt.NDArray[np.float64] = np.cross(image.row_direction, image.column_direction)
        distance = float(np.dot(normal_vector, image.image_position))
        located.append((distance, index, image))

    located.sort(key=lambda item: (item[0], item[1]))
    return [image for _, _, image in located] + unlocated
