"""Pytest configuration and fixtures for the segmentation tests."""

import numpy as np
import pytest
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.sequence import Sequence
from pydicom.uid import ExplicitVRLittleEndian

from binary_image import BinaryImage
from binary_volume import BinaryVolume
from dicom_io import CT_IMAGE_STORAGE_SOP_CLASS_UID, RT_STRUCTURE_SET_STORAGE_SOP_CLASS_UID
from geometry import ImageGeometry
from structures import Contour, ImageSeries, ROI, Slice

FRAME_OF_REFERENCE_UID = '1.2.826.0.1.3680043.8.498.100'
SERIES_INSTANCE_UID = '1.2.826.0.1.3680043.8.498.200'
SLICE_POSITIONS = (0.0, 2.0, 4.0)


@pytest.fixture
def make_image():
    """Factory for axial image geometries (20x20 pixels of 1 mm by default)."""

    def _make_image(columns=20, rows=20, pos_slice=0.0, col_spacing=1.0, row_spacing=1.0, pos_x=0.0, pos_y=0.0,
                    uid=None):
        return ImageGeometry(columns, rows, col_spacing, row_spacing, pos_x, pos_y, pos_slice, uid=uid)

    return _make_image


@pytest.fixture
def make_square():
    """Factory for square contours given by two opposite corners (in mm)."""

    def _make_square(x0, y0, x1, y1, z=0.0):
        return Contour([[x0, y0, z], [x1, y0, z], [x1, y1, z], [x0, y1, z]])

    return _make_square


@pytest.fixture
def image_series(make_image):
    """Three 20x20 axial images at z = 0, 2 and 4 mm."""
    return ImageSeries([make_image(pos_slice=z, uid=f'1.2.3.{i + 1}') for i, z in enumerate(SLICE_POSITIONS)])


@pytest.fixture
def square_roi(image_series, make_square):
    """A ROI delineating the square (2, 2)-(8, 8) mm on the first two images."""
    roi = ROI('GTV', 1)
    for image in image_series[:2]:
        roi.add_slice(Slice(image.uid, [make_square(2, 2, 8, 8, image.pos_slice)], image))
    return roi


@pytest.fixture
def make_bin_volume():
    """Factory for binary volumes built from one mask per image."""

    def _make_bin_volume(masks, images, series=None):
        volume = BinaryVolume(series if series is not None else ImageSeries(list(images)))
        for mask, image in zip(masks, images):
            volume.add(BinaryImage(np.array(mask, dtype=np.uint8).reshape(image.shape), image))
        return volume

    return _make_bin_volume


def _write_dataset(ds, path, sop_class_uid, sop_instance_uid):
    ds.file_meta = FileMetaDataset()
    ds.file_meta.MediaStorageSOPClassUID = sop_class_uid
    ds.file_meta.MediaStorageSOPInstanceUID = sop_instance_uid
    ds.file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    ds.SOPClassUID = sop_class_uid
    ds.SOPInstanceUID = sop_instance_uid
    ds.save_as(path, enforce_file_format=True)


def _contour_dataset(points, uid, number):
    contour = Dataset()
    contour.ContourGeometricType = 'CLOSED_PLANAR'
    contour.NumberOfContourPoints = len(points)
    contour.ContourNumber = number
    contour.ContourData = [float(value) for point in points for value in point]
    contour_image = Dataset()
    contour_image.ReferencedSOPClassUID = CT_IMAGE_STORAGE_SOP_CLASS_UID
    contour_image.ReferencedSOPInstanceUID = uid
    contour.ContourImageSequence = Sequence([contour_image])
    return contour


@pytest.fixture
def dicom_folder(tmp_path):
    """
    A folder with three 20x20 CT images (z = 0, 2, 4 mm) and an RT struct.

    The RT struct holds two ROIs delineated on the first two images: 'Rater1' with the square (2, 2)-(8, 8) mm and
    'Rater2' with the square (2, 2)-(10, 8) mm.
    """
    uids = []
    for i, z in enumerate(SLICE_POSITIONS):
        uid = f'1.2.826.0.1.3680043.8.498.300.{i + 1}'
        uids.append(uid)
        ds = Dataset()
        ds.Modality = 'CT'
        ds.SeriesInstanceUID = SERIES_INSTANCE_UID
        ds.FrameOfReferenceUID = FRAME_OF_REFERENCE_UID
        ds.Rows = 20
        ds.Columns = 20
        ds.PixelSpacing = [1.0, 1.0]
        ds.ImagePositionPatient = [0.0, 0.0, z]
        ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
        ds.SliceThickness = 2.0
        _write_dataset(ds, tmp_path / f'CT{i + 1}.dcm', CT_IMAGE_STORAGE_SOP_CLASS_UID, uid)

    rt_struct = Dataset()
    rt_struct.Modality = 'RTSTRUCT'
    rt_struct.FrameOfReferenceUID = FRAME_OF_REFERENCE_UID
    rt_struct.StructureSetROISequence = Sequence()
    rt_struct.ROIContourSequence = Sequence()
    rt_struct.RTROIObservationsSequence = Sequence()
    for number, (name, x1) in enumerate([('Rater1', 8.0), ('Rater2', 10.0)], start=1):
        structure_set_roi = Dataset()
        structure_set_roi.ROINumber = number
        structure_set_roi.ReferencedFrameOfReferenceUID = FRAME_OF_REFERENCE_UID
        structure_set_roi.ROIName = name
        structure_set_roi.ROIGenerationAlgorithm = 'MANUAL'
        rt_struct.StructureSetROISequence.append(structure_set_roi)

        roi_contour = Dataset()
        roi_contour.ROIDisplayColor = [0, 255, 0]
        roi_contour.ReferencedROINumber = number
        roi_contour.ContourSequence = Sequence([
            _contour_dataset([[2.0, 2.0, z], [x1, 2.0, z], [x1, 8.0, z], [2.0, 8.0, z]], uid, i)
            for i, (z, uid) in enumerate(zip(SLICE_POSITIONS[:2], uids[:2]))
        ])
        rt_struct.ROIContourSequence.append(roi_contour)

        observation = Dataset()
        observation.ObservationNumber = number
        observation.ReferencedROINumber = number
        observation.ROIObservationLabel = name
        observation.RTROIInterpretedType = 'GTV'
        observation.ROIInterpreter = ''
        rt_struct.RTROIObservationsSequence.append(observation)

    _write_dataset(rt_struct, tmp_path / 'RS.dcm', RT_STRUCTURE_SET_STORAGE_SOP_CLASS_UID,
                   '1.2.826.0.1.3680043.8.498.400')
    return tmp_path
