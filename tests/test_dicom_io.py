"""Tests for reading and writing CT series and RT structs."""

import logging
import os
import shutil

import numpy as np
import pytest
from pydicom import dcmread
from shapely import Polygon

from binary_volume import BinaryVolume
from dicom_io import add_roi, extract_rt_ct_paths, load_image_series, load_structure_set
from staple import Staple
from volume_aligner import VolumeAligner


@pytest.fixture
def rt_path(dicom_folder):
    return str(dicom_folder / 'RS.dcm')


@pytest.fixture
def loaded(dicom_folder, rt_path):
    """The image series and the structure set of the DICOM folder."""
    image_series = load_image_series(str(dicom_folder))
    return image_series, load_structure_set(rt_path, image_series)


class TestLoad:
    """Tests for loading CT series and RT structs."""

    def test_load_image_series(self, dicom_folder):
        """Every CT image should be read in order of slice position."""
        image_series = load_image_series(str(dicom_folder))

        assert len(image_series) == 3
        assert image_series.positions == [0.0, 2.0, 4.0]
        assert image_series.uid == '1.2.826.0.1.3680043.8.498.200'
        assert image_series[0].uid == '1.2.826.0.1.3680043.8.498.300.1'
        assert image_series[0].shape == (20, 20)
        assert image_series.slice_spacing == 2.0

    def test_load_structure_set(self, loaded):
        """Every ROI should be read with its attributes and slices."""
        image_series, structure_set = loaded

        assert structure_set.frame_uid == '1.2.826.0.1.3680043.8.498.100'
        assert structure_set.roi_names == ['Rater1', 'Rater2']
        roi = structure_set.roi('Rater1')
        assert roi.number == 1
        assert roi.color == (0, 255, 0)
        assert roi.interpreted_type == 'GTV'
        assert roi.algorithm == 'MANUAL'
        assert [roi_slice.image for roi_slice in roi.slices] == list(image_series[:2])
        assert roi.slices[0].contours[0].area == pytest.approx(36.0)

    def test_load_without_images(self, rt_path):
        """Without an image series the slices reference no image."""
        structure_set = load_structure_set(rt_path)

        assert all(roi_slice.image is None for roi in structure_set.rois for roi_slice in roi.slices)

    def test_attach_by_position(self, dicom_folder, rt_path):
        """Slices whose UID is not part of the series should be attached by position."""
        image_series = load_image_series(str(dicom_folder))
        image_series[0].uid = '1.2.3.4'
        roi = load_structure_set(rt_path, image_series).roi('Rater2')

        assert roi.slices[0].image is image_series[0]
        assert roi.slices[0].uid == '1.2.3.4'

    def test_unmatched_slice(self, dicom_folder, rt_path, caplog):
        """Slices without a matching image should be logged and kept without image."""
        image_series = load_image_series(str(dicom_folder))
        image_series.images = image_series.images[1:]

        with caplog.at_level(logging.WARNING):
            roi = load_structure_set(rt_path, image_series).roi('Rater1')

        assert roi.slices[0].image is None
        assert "ROI 'Rater1'" in caplog.text

    def test_extract_rt_ct_paths(self, dicom_folder):
        """Should find the RT struct and a CT image."""
        rt_path, ct_path = extract_rt_ct_paths(str(dicom_folder))

        assert os.path.basename(rt_path) == 'RS.dcm'
        assert os.path.basename(ct_path).startswith('CT')


class TestAddROI:
    """Tests for adding a ROI to an RT struct."""

    def test_add_roi(self, dicom_folder, loaded, rt_path):
        """The ROI should be saved with the next free number and read back unchanged."""
        image_series, structure_set = loaded
        volume = BinaryVolume.from_roi(structure_set.roi('Rater1'), image_series)
        roi = volume.to_roi(structure_set, name='Copy', interpreted_type='ORGAN')

        number = add_roi(str(dicom_folder), roi)

        assert number == 3
        reloaded = load_structure_set(rt_path, image_series)
        assert reloaded.roi_names == ['Rater1', 'Rater2', 'Copy']
        copy = reloaded.roi('Copy')
        assert copy.number == 3
        assert copy.interpreted_type == 'ORGAN'
        np.testing.assert_array_equal(BinaryVolume.from_roi(copy, image_series).narray(), volume.narray())

    def test_contours_are_counter_clockwise(self, dicom_folder, loaded, rt_path):
        """Written contours should be oriented counter-clockwise."""
        image_series, structure_set = loaded
        roi = BinaryVolume.from_roi(structure_set.roi('Rater2'), image_series).to_roi(structure_set, name='Copy')

        add_roi(str(dicom_folder), roi)

        ds = dcmread(rt_path)
        contour_sequence = ds.ROIContourSequence[-1].ContourSequence
        assert len(contour_sequence) == 2
        for contour in contour_sequence:
            points = np.array(contour.ContourData, dtype=float).reshape(-1, 3)
            assert contour.NumberOfContourPoints == len(points)
            assert Polygon(points[:, :2]).exterior.is_ccw
        assert ds.RTROIObservationsSequence[-1].ROIObservationLabel == 'Copy'
        assert ds.RTROIObservationsSequence[-1].RTROIInterpretedType == 'CTV'

    def test_multiple_rt_structs(self, dicom_folder, loaded):
        """Folders with more than one RT struct are refused."""
        shutil.copy(dicom_folder / 'RS.dcm', dicom_folder / 'RS2.dcm')
        structure_set = loaded[1]

        with pytest.raises(ValueError):
            add_roi(str(dicom_folder), structure_set.roi('Rater1'))

    def test_missing_rt_struct(self, dicom_folder, loaded):
        """Folders without RT struct are refused."""
        os.remove(dicom_folder / 'RS.dcm')
        structure_set = loaded[1]

        with pytest.raises(ValueError):
            add_roi(str(dicom_folder), structure_set.roi('Rater1'))


class TestStaplePipeline:
    """Tests for the whole analysis, from the RT struct back to the RT struct."""

    def test_consensus_roi(self, dicom_folder, loaded, rt_path):
        """The consensus of two raters should be saved as a new ROI between their intersection and union."""
        image_series, structure_set = loaded
        raters = [BinaryVolume.from_roi(roi, image_series) for roi in structure_set.rois]
        aligner = VolumeAligner(raters)

        consensus = Staple(aligner).solve()
        roi = consensus.to_roi(structure_set, name='STAPLE', interpreted_type='GTV')
        add_roi(str(dicom_folder), roi)

        first, second = (rater.narray() for rater in raters)
        segmentation = consensus.narray()
        assert (segmentation >= (first & second)).all()
        assert (segmentation <= (first | second)).all()
        assert raters[0].sensitivity is not None
        reloaded = load_structure_set(rt_path, image_series).roi('STAPLE')
        np.testing.assert_array_equal(BinaryVolume.from_roi(reloaded, image_series).narray(), segmentation)
