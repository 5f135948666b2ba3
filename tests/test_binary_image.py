"""Tests for BinaryImage."""

import numpy as np
import pytest

from binary_image import BinaryImage
from binary_volume import BinaryVolume
from structures import ImageSeries, ROI


class TestBinaryImageInit:
    """Tests for the validation of binary masks."""

    def test_valid_mask(self, make_image):
        """Should accept a one byte binary mask of the image shape."""
        image = make_image(columns=4, rows=3)
        bin_image = BinaryImage(np.zeros((3, 4), dtype=np.uint8), image)

        assert bin_image.columns == 4
        assert bin_image.rows == 3
        assert bin_image.image is image

    def test_pos_slice(self, make_image):
        """The slice position should be the one of the image."""
        image = make_image(columns=2, rows=2, pos_slice=4.0)

        assert BinaryImage(np.zeros((2, 2), dtype=np.uint8), image).pos_slice == 4.0

    def test_image_required(self):
        """A binary image cannot be created without an image."""
        with pytest.raises(AttributeError):
            BinaryImage(np.zeros((2, 2), dtype=np.uint8), None)

    def test_not_an_array(self, make_image):
        """Should reject masks which are not numpy arrays."""
        with pytest.raises(TypeError):
            BinaryImage([[0, 1], [1, 0]], make_image(columns=2, rows=2))

    def test_wrong_dimensions(self, make_image):
        """Should reject masks which are not two-dimensional."""
        with pytest.raises(ValueError):
            BinaryImage(np.zeros((1, 2, 2), dtype=np.uint8), make_image(columns=2, rows=2))

    def test_wrong_element_size(self, make_image):
        """Should reject masks with more than one byte per element."""
        with pytest.raises(ValueError):
            BinaryImage(np.zeros((2, 2), dtype=np.int16), make_image(columns=2, rows=2))

    def test_not_binary(self, make_image):
        """Should reject masks holding values above 1."""
        with pytest.raises(ValueError):
            BinaryImage(np.full((2, 2), 2, dtype=np.uint8), make_image(columns=2, rows=2))

    def test_shape_mismatch(self, make_image):
        """Should reject masks which do not match the image shape."""
        with pytest.raises(ValueError):
            BinaryImage(np.zeros((2, 3), dtype=np.uint8), make_image(columns=2, rows=3))


class TestBinaryImageOperations:
    """Tests for the queries and modifications of a binary image."""

    def test_from_contours_unites(self, make_image, make_square):
        """Overlapping contours should be united."""
        image = make_image()
        bin_image = BinaryImage.from_contours([make_square(0, 0, 4, 4), make_square(2, 2, 6, 6)], image)

        assert bin_image.mask.sum() == 25 + 25 - 9
        assert bin_image.mask.max() == 1

    def test_from_no_contours(self, make_image):
        """Without contours the binary image should be empty."""
        bin_image = BinaryImage.from_contours([], make_image())

        assert bin_image.mask.sum() == 0

    def test_area(self, make_image):
        """The area should be the pixel count times the pixel area."""
        image = make_image(columns=4, rows=3, col_spacing=0.5, row_spacing=2.0)
        mask = np.zeros((3, 4), dtype=np.uint8)
        mask[0, :3] = 1

        bin_image = BinaryImage(mask, image)

        assert bin_image.area() == pytest.approx(3.0)
        assert bin_image.area(foreground=False) == pytest.approx(9.0)

    def test_selection(self, make_image):
        """Linear indices should count columns fastest."""
        mask = np.zeros((3, 4), dtype=np.uint8)
        mask[1, 2] = 1
        mask[2, 0] = 1

        bin_image = BinaryImage(mask, make_image(columns=4, rows=3))

        assert bin_image.selection().tolist() == [6, 8]

    def test_add(self, make_image):
        """Adding a mask should unite it in place."""
        image = make_image(columns=3, rows=1)
        bin_image = BinaryImage(np.array([[1, 0, 0]], dtype=np.uint8), image)
        bin_image.add(np.array([[0, 0, 1]], dtype=np.uint8))

        assert bin_image.mask.tolist() == [[1, 0, 1]]

    def test_add_shape_mismatch(self, make_image):
        """Adding a mask of a different shape should fail."""
        bin_image = BinaryImage(np.zeros((1, 3), dtype=np.uint8), make_image(columns=3, rows=1))

        with pytest.raises(ValueError):
            bin_image.add(np.zeros((1, 4), dtype=np.uint8))

    def test_add_not_binary(self, make_image):
        """Adding a non binary mask should fail."""
        bin_image = BinaryImage(np.zeros((1, 3), dtype=np.uint8), make_image(columns=3, rows=1))

        with pytest.raises(ValueError):
            bin_image.add(np.array([[0, 2, 0]], dtype=np.uint8))


class TestBinaryImageContours:
    """Tests for the conversion of a binary image to contours."""

    def test_to_contours(self, make_image, make_square):
        """A filled square should be converted back to its corners."""
        image = make_image(pos_slice=4.0)
        bin_image = BinaryImage.from_contours([make_square(2, 3, 10, 8, 4.0)], image)
        contours = bin_image.to_contours()

        assert len(contours) == 1
        points = contours[0].points
        assert {(x, y) for x, y in points[:, :2].tolist()} == {(2.0, 3.0), (10.0, 3.0), (10.0, 8.0), (2.0, 8.0)}
        assert (points[:, 2] == 4.0).all()

    def test_to_contours_rounds_coordinates(self, make_image):
        """x and y should be rounded to 1 decimal, z to 3 decimals."""
        image = make_image(pos_x=0.123, pos_y=-0.456, pos_slice=1.23456)
        mask = np.zeros(image.shape, dtype=np.uint8)
        mask[0:3, 0:3] = 1
        contours = BinaryImage(mask, image).to_contours()

        points = contours[0].points
        assert points[0].tolist() == [0.1, -0.5, 1.235]

    def test_to_contours_empty(self, make_image):
        """An empty binary image should yield no contours."""
        assert BinaryImage(np.zeros((20, 20), dtype=np.uint8), make_image()).to_contours() == []

    def test_contour_image(self, make_image):
        """The corners of each contour should be labelled with its number."""
        image = make_image(columns=10, rows=10)
        mask = np.zeros(image.shape, dtype=np.uint8)
        mask[1:4, 1:4] = 1
        mask[6:9, 5:9] = 1
        labels = BinaryImage(mask, image).contour_image()

        assert labels[1, 1] == 1
        assert labels[3, 3] == 1
        assert labels[6, 5] == 2
        assert labels[8, 8] == 2
        assert labels[2, 2] == 0
        assert np.count_nonzero(labels) == 8

    def test_to_slice(self, make_image, make_square):
        """Should add a slice referencing the image to the ROI."""
        image = make_image(uid='1.2.3.4')
        bin_image = BinaryImage.from_contours([make_square(2, 2, 6, 6)], image)
        roi = ROI('Consensus', 1)
        roi_slice = bin_image.to_slice(roi)

        assert roi.slices == [roi_slice]
        assert roi_slice.uid == '1.2.3.4'
        assert roi_slice.image is image
        assert len(roi_slice.contours) == 1

    def test_to_bin_volume(self, make_image):
        """Should wrap the binary image in a single image volume."""
        image = make_image()
        bin_image = BinaryImage(np.zeros(image.shape, dtype=np.uint8), image)
        series = ImageSeries([image])
        volume = bin_image.to_bin_volume(series, source='threshold')

        assert isinstance(volume, BinaryVolume)
        assert volume.bin_images == [bin_image]
        assert volume.series is series
        assert volume.source == 'threshold'
