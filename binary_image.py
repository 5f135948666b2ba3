import numpy as np

from contour_tracer import trace_contours
from raster_fill import fill_polygon
from structures import Contour, Slice


def _check_binary(mask, name='mask'):
    if not isinstance(mask, np.ndarray):
        raise TypeError(f'Invalid argument {name!r}. Expected np.ndarray, got {type(mask).__name__}.')
    if mask.ndim != 2:
        raise ValueError(f'Invalid argument {name!r}. Expected a 2D array, got {mask.ndim} dimensions.')
    if mask.dtype.itemsize != 1:
        raise ValueError(f'Invalid argument {name!r}. Expected an element size of 1 byte, got '
                         f'{mask.dtype.itemsize} bytes.')
    if mask.size > 0 and mask.max() > 1:
        raise ValueError(f'Invalid argument {name!r}. Expected a binary array with max value 1, got {mask.max()}.')


class BinaryImage:
    """
    A binary segmentation of a single image.

    The mask has the shape (rows, columns) of the image it belongs to and holds 1 for segmented pixels and 0 elsewhere.
    The image geometry is referenced, not owned: binary images of different segmentations of the same image share one
    `ImageGeometry` object.
    """

    def __init__(self, mask, image):
        """
        Initialize a `BinaryImage` object.

        :param mask: A 2D array of shape (rows, columns) with one byte per element and values in {0, 1}.
        :type mask: np.ndarray
        :param image: The geometry of the segmented image.
        :type image: geometry.ImageGeometry
        """
        self.image = image
        self.mask = mask

    def __repr__(self):
        return f'BinaryImage(image={self.image!r}, segmented={int(np.count_nonzero(self._mask == 1))})'

    @property
    def mask(self):
        return self._mask

    @mask.setter
    def mask(self, mask):
        _check_binary(mask)
        if mask.shape != self.image.shape:
            raise ValueError(f'Expected a mask of shape {self.image.shape} matching the image, got {mask.shape}.')
        self._mask = mask

    @classmethod
    def from_contours(cls, contours, image):
        """
        Create a binary image by rasterizing contours on an image.

        Every contour is filled separately and the filled contours are united.

        :param contours: The contours to rasterize.
        :type contours: typing.Iterable[structures.Contour]
        :param image: The geometry of the image to rasterize on.
        :type image: geometry.ImageGeometry
        :return: The united binary image.
        :rtype: BinaryImage
        """
        bin_image = cls(np.zeros(image.shape, dtype=np.uint8), image)
        for contour in contours:
            x, y, z = contour.coords
            bin_image.add(fill_polygon(x, y, z, image))
        return bin_image

    @property
    def columns(self):
        return self._mask.shape[1]

    @property
    def rows(self):
        return self._mask.shape[0]

    @property
    def pos_slice(self):
        return self.image.pos_slice

    def add(self, pixels):
        """
        Unite a binary mask with the mask of this image, in place.

        :param pixels: A binary mask of the same shape.
        :type pixels: np.ndarray
        """
        _check_binary(pixels, 'pixels')
        if pixels.shape != self._mask.shape:
            raise ValueError(f'Expected pixels of shape {self._mask.shape}, got {pixels.shape}.')
        self._mask[pixels > 0] = 1

    def area(self, foreground=True):
        """
        Compute the area covered by segmented (or unsegmented) pixels.

        :param bool foreground: Count the segmented pixels if True, the unsegmented ones otherwise.
        :return: The area in mm^2.
        :rtype: float
        """
        value = 1 if foreground else 0
        return int(np.count_nonzero(self._mask == value)) * self.image.pixel_area

    def selection(self):
        """
        The linear indices (column + row * columns) of all segmented pixels.

        :rtype: np.ndarray[int]
        """
        return np.flatnonzero(self._mask == 1)

    def contour_indices(self):
        """
        Trace the outer contour of every structure in the mask.

        :return: The column and row indices of the corners of each contour.
        :rtype: list[(np.ndarray[int], np.ndarray[int])]
        """
        return trace_contours(self._mask)

    def contour_image(self):
        """
        Create a label image of the traced contours: the corner pixels of the i-th contour hold the value i + 1.

        :rtype: np.ndarray[np.uint8]
        """
        labels = np.zeros(self._mask.shape, dtype=np.uint8)
        for i, (columns, rows) in enumerate(self.contour_indices()):
            labels[rows, columns] = i + 1
        return labels

    def to_contours(self):
        """
        Convert the segmentation to contours in patient coordinates.

        The x- and y-coordinates are rounded to 1 decimal and the z-coordinates to 3 decimals.

        :return: One contour per structure, or an empty list if nothing is segmented.
        :rtype: list[structures.Contour]
        """
        contours = []
        for i, (columns, rows) in enumerate(self.contour_indices()):
            x, y, z = self.image.coordinates_from_indices(columns, rows)
            points = np.column_stack([np.round(x, 1), np.round(y, 1), np.round(z, 3)])
            contours.append(Contour(points, number=i + 1))
        return contours

    def to_slice(self, roi):
        """
        Convert the segmentation to a slice of contours and add it to `roi`.

        :param roi: The ROI to add the slice to.
        :type roi: structures.ROI
        :return: The created slice.
        :rtype: structures.Slice
        """
        roi_slice = Slice(self.image.uid, self.to_contours(), self.image)
        roi.add_slice(roi_slice)
        return roi_slice

    def to_bin_volume(self, series, source=None):
        """
        Wrap this image in a single image binary volume.

        :param series: The image series the volume refers to.
        :type series: structures.ImageSeries
        :param source: The object the segmentation originates from.
        :rtype: binary_volume.BinaryVolume
        """
        from binary_volume import BinaryVolume

        return BinaryVolume(series, images=[self], source=source)
