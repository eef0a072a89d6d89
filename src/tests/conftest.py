"""
Test fixtures: small in-memory RT datasets forming one consistent treatment case.

CT: 3 slices of 10x10 pixels at z = 0, 2.5, 5 with 2 mm pixels, TLHC at (-10, -10).
Dose: 3 frames of 5x5 samples on the same planes with 4 mm pixels; centre 6200, elsewhere 3000.
Plan: 60 Gy prescription (6000 cGy).
"""
from __future__ import annotations


import numpy as np
import pytest
from pydicom.dataset import Dataset
from pydicom.uid import CTImageStorage, RTDoseStorage, RTPlanStorage, RTStructureSetStorage


from rtc_app.data_builders.ImageBuilder import construct_dose_slices
from rtc_app.managers.config_manager import ConfigManager
from rtc_app.utils.image_slice import ImageSlice


PLAN_UID = "1.2.826.0.1.3680043.8.498.1"
DOSE_UID = "1.2.826.0.1.3680043.8.498.2"
STRUCT_UID = "1.2.826.0.1.3680043.8.498.3"
CT_UIDS = ["1.2.826.0.1.3680043.8.498.10", "1.2.826.0.1.3680043.8.498.11", "1.2.826.0.1.3680043.8.498.12"]
SLICE_Z = [0.0, 2.5, 5.0]


def make_ct_dataset(sop_uid: str, z: float, patient_position: str = "HFS", spacing: float = 2.0) -> Dataset:
    ds = Dataset()
    ds.SOPClassUID = CTImageStorage
    ds.SOPInstanceUID = sop_uid
    ds.Modality = "CT"
    ds.PatientPosition = patient_position
    ds.ImagePositionPatient = [-10.0, -10.0, z]
    ds.ImageOrientationPatient = [1.0, 0.0, 0.0, 0.0, 1.0, 0.0]
    ds.PixelSpacing = [spacing, spacing]
    ds.SliceThickness = 2.5
    ds.Rows = 10
    ds.Columns = 10
    return ds


def make_ct_slice(sop_uid: str, z: float, **kwargs) -> ImageSlice:
    ds = make_ct_dataset(sop_uid, z, **kwargs)
    return ImageSlice.from_dataset(ds, np.zeros((10, 10), dtype=np.int16))


def make_dose_pixels(center: int = 6200, background: int = 3000) -> np.ndarray:
    frames = np.full((3, 5, 5), background, dtype=np.uint32)
    frames[:, 2, 2] = center
    return frames


def make_dose_dataset(
    sop_uid: str = DOSE_UID,
    plan_uid: str = PLAN_UID,
    scaling: float | None = 1.0,
) -> Dataset:
    ds = Dataset()
    ds.SOPClassUID = RTDoseStorage
    ds.SOPInstanceUID = sop_uid
    ds.Modality = "RTDOSE"
    ds.ImagePositionPatient = [-10.0, -10.0, 0.0]
    ds.ImageOrientationPatient = [1.0, 0.0, 0.0, 0.0, 1.0, 0.0]
    ds.PixelSpacing = [4.0, 4.0]
    ds.GridFrameOffsetVector = list(SLICE_Z)
    ds.NumberOfFrames = 3
    ds.Rows = 5
    ds.Columns = 5
    ds.DoseUnits = "GY"
    ds.DoseType = "PHYSICAL"
    ds.DoseSummationType = "PLAN"
    if scaling is not None:
        ds.DoseGridScaling = scaling

    ref_plan = Dataset()
    ref_plan.ReferencedSOPClassUID = RTPlanStorage
    ref_plan.ReferencedSOPInstanceUID = plan_uid
    ds.ReferencedRTPlanSequence = [ref_plan]
    return ds


def make_plan_dataset(sop_uid: str = PLAN_UID, prescription_gy: float | None = 60.0) -> Dataset:
    ds = Dataset()
    ds.SOPClassUID = RTPlanStorage
    ds.SOPInstanceUID = sop_uid
    ds.Modality = "RTPLAN"
    ds.RTPlanLabel = "Prostate"
    ds.RTPlanName = "Prostate VMAT"
    ds.RTPlanDate = "20240131"
    ds.RTPlanTime = "101500"
    if prescription_gy is not None:
        dose_ref = Dataset()
        dose_ref.DoseReferenceStructureType = "VOLUME"
        dose_ref.TargetPrescriptionDose = prescription_gy
        ds.DoseReferenceSequence = [dose_ref]
    return ds


def make_square_contour(z: float, image_uid: str, half_size: float = 5.0) -> Dataset:
    contour = Dataset()
    contour.ContourGeometricType = "CLOSED_PLANAR"
    contour.NumberOfContourPoints = 4
    contour.ContourData = [
        -half_size, -half_size, z,
        half_size, -half_size, z,
        half_size, half_size, z,
        -half_size, half_size, z,
    ]
    image_ref = Dataset()
    image_ref.ReferencedSOPClassUID = CTImageStorage
    image_ref.ReferencedSOPInstanceUID = image_uid
    contour.ContourImageSequence = [image_ref]
    return contour


def make_structure_set_dataset(sop_uid: str = STRUCT_UID) -> Dataset:
    ds = Dataset()
    ds.SOPClassUID = RTStructureSetStorage
    ds.SOPInstanceUID = sop_uid
    ds.Modality = "RTSTRUCT"
    ds.StructureSetLabel = "Pelvis"
    ds.StructureSetDate = "20240130"

    roi = Dataset()
    roi.ROINumber = 1
    roi.ROIName = "PTV"
    ds.StructureSetROISequence = [roi]

    observation = Dataset()
    observation.ObservationNumber = 1
    observation.ReferencedROINumber = 1
    observation.RTROIInterpretedType = "PTV"
    observation.ROIObservationLabel = "PTV"
    ds.RTROIObservationsSequence = [observation]

    roi_contour = Dataset()
    roi_contour.ReferencedROINumber = 1
    roi_contour.ROIDisplayColor = [255, 0, 0]
    roi_contour.ContourSequence = [make_square_contour(z, uid) for z, uid in zip(SLICE_Z, CT_UIDS)]
    ds.ROIContourSequence = [roi_contour]
    return ds


@pytest.fixture
def conf_mgr(tmp_path):
    """Configuration manager backed by an empty temporary directory (all defaults)."""
    return ConfigManager(config_dir=str(tmp_path / "config_files"))


@pytest.fixture
def ct_slices():
    return [make_ct_slice(uid, z) for uid, z in zip(CT_UIDS, SLICE_Z)]


@pytest.fixture
def plan_ds():
    return make_plan_dataset()


@pytest.fixture
def dose_ds():
    return make_dose_dataset()


@pytest.fixture
def dose_slices(dose_ds):
    return construct_dose_slices(dose_ds, make_dose_pixels())


@pytest.fixture
def structure_set_ds():
    return make_structure_set_dataset()
