import logging
import typing
from collections import Counter

import numpy as np
from shapely import Polygon

from geometry import Coordinate, GeometryError

logger = logging.getLogger(__name__)

_CONTOUR_GEOMETRIC_TYPE = 'CLOSED_PLANAR'
_ROI_GENERATION_ALGORITHM = 'AUTOMATIC'
_ROI_DISPLAY_COLOR = (255, 0, 0)  # red


class SegmentationSource(typing.Protocol):
    """
    Anything a binary volume can be segmented from: a named collection of slices, each holding the contours delineated
    on one image.
    """
    name: str
    slices: typing.List['Slice']


class Contour:
    """
    A closed polygon delineated on a single image plane.

    The polygon is implicitly closed: the last point is connected to the first one without being repeated.
    """

    def __init__(self, points, number=None, geometric_type=_CONTOUR_GEOMETRIC_TYPE):
        """
        Initialize a `Contour` object.

        :param points: The corners of the polygon as an array of shape (N, 3) holding x, y and z in mm.
        :type points: np.ndarray[float]
        :param number: The contour number (3006,0048), if known.
        :type number: typing.Optional[int]
        :param str geometric_type: The contour geometric type (3006,0042).
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        self.points = points
        self.number = number
        self.geometric_type = geometric_type

    def __len__(self):
        return len(self.points)

    @property
    def coordinates(self):
        """ The corners of the polygon as `Coordinate` objects. """
        return [Coordinate(*point) for point in self.points.tolist()]

    @property
    def coords(self):
        """
        The corners of the polygon as separate coordinate arrays.

        :return: The x-, y- and z-coordinates in mm.
        :rtype: (np.ndarray[float], np.ndarray[float], np.ndarray[float])
        """
        return self.points[:, 0], self.points[:, 1], self.points[:, 2]

    @property
    def area(self):
        """
        The area enclosed by the polygon, computed in the xy-plane.

        :return: The area in mm^2.
        :rtype: float
        """
        if len(self.points) < 3:
            return 0.0
        return Polygon(self.points[:, :2]).area

    def translate(self, x, y, z):
        """ Move the polygon by the given offset vector (in mm). """
        self.points = self.points + np.array([x, y, z], dtype=float)


class Slice:
    """
    The contours of a ROI that are delineated on one image.
    """

    def __init__(self, uid, contours=None, image=None):
        """
        Initialize a `Slice` object.

        :param str uid: The SOP instance UID of the referenced image.
        :param contours: The contours of this slice.
        :type contours: typing.Optional[typing.List[Contour]]
        :param image: The geometry of the referenced image, if it is available.
        :type image: typing.Optional[geometry.ImageGeometry]
        """
        self.uid = uid
        self.contours = list(contours) if contours else []
        self.image = image

    def add_contour(self, contour):
        if not isinstance(contour, Contour):
            raise TypeError(f'Expected a Contour, got {type(contour).__name__}.')
        self.contours.append(contour)

    @property
    def pos(self):
        """ The slice position of the referenced image, or None if the image is not available. """
        return self.image.pos_slice if self.image is not None else None

    def attach_to(self, image_series):
        """
        Attach this slice to the image of `image_series` located at the position of its contours.

        This is useful when the segmentation refers to images whose UIDs differ from the ones of `image_series`, e.g. if
        a rater's software has modified them.

        :param image_series: The image series to attach to.
        :type image_series: ImageSeries
        :raises GeometryError: If no image of the series matches the position of the contours.
        """
        if self.image is not None and image_series.image(self.uid) is self.image:
            return
        if not self.contours:
            raise GeometryError(f'Unable to locate slice {self.uid!r} without contours.')
        image = image_series.image(float(self.contours[0].points[0, 2]))
        if image is None:
            raise GeometryError(f'No image was found matching slice {self.uid!r} at position '
                                f'{self.contours[0].points[0, 2]}.')
        logger.debug('Attached slice %r to image %r by position', self.uid, image.uid)
        self.image = image
        self.uid = image.uid

    def bin_image(self, source_image=None):
        """
        Rasterize the contours of this slice.

        :param source_image: The image to rasterize on. Defaults to the referenced image.
        :type source_image: typing.Optional[geometry.ImageGeometry]
        :return: The union of the filled contours.
        :rtype: binary_image.BinaryImage
        """
        from binary_image import BinaryImage

        source_image = source_image if source_image is not None else self.image
        if source_image is None:
            raise GeometryError(f'The image referenced by slice {self.uid!r} is missing. Unable to rasterize.')
        return BinaryImage.from_contours(self.contours, source_image)

    def area(self, source_image=None):
        """
        The delineated area of this slice, counted in pixels of the referenced image.

        :return: The area in mm^2.
        :rtype: float
        """
        return self.bin_image(source_image).area()

    def translate(self, x, y, z):
        for contour in self.contours:
            contour.translate(x, y, z)


class ROI:
    """
    A region of interest: a named structure delineated by contours across the images of a series.
    """

    def __init__(self, name, number, algorithm=_ROI_GENERATION_ALGORITHM, interpreter='', interpreted_type='',
                 color=_ROI_DISPLAY_COLOR, frame_uid=None):
        """
        Initialize a `ROI` object.

        :param str name: The ROI name (3006,0026).
        :param int number: The ROI number (3006,0022).
        :param str algorithm: The ROI generation algorithm (3006,0036).
        :param str interpreter: The ROI interpreter (3006,00A6).
        :param str interpreted_type: The RT ROI interpreted type (3006,00A4).
        :param color: The display color as RGB triplet (3006,002A).
        :type color: typing.Sequence[int]
        :param frame_uid: The referenced frame of reference UID.
        :type frame_uid: typing.Optional[str]
        """
        self.name = name
        self.number = int(number)
        self.algorithm = algorithm
        self.interpreter = interpreter
        self.interpreted_type = interpreted_type
        self.color = tuple(color)
        self.frame_uid = frame_uid
        self.slices = []

    def __repr__(self):
        return f'ROI(name={self.name!r}, number={self.number}, slices={len(self.slices)})'

    def add_slice(self, roi_slice):
        if not isinstance(roi_slice, Slice):
            raise TypeError(f'Expected a Slice, got {type(roi_slice).__name__}.')
        self.slices.append(roi_slice)

    def slice(self, uid=None):
        """
        Get the slice referencing the image with the given UID.

        :param uid: The SOP instance UID of the image. If omitted, the first slice is returned.
        :type uid: typing.Optional[str]
        :return: The matching slice or None.
        :rtype: typing.Optional[Slice]
        """
        if uid is None:
            return self.slices[0] if self.slices else None
        return next((roi_slice for roi_slice in self.slices if roi_slice.uid == uid), None)

    @property
    def num_contours(self):
        return sum(len(roi_slice.contours) for roi_slice in self.slices)

    def translate(self, x, y, z):
        for roi_slice in self.slices:
            roi_slice.translate(x, y, z)

    def size(self, image_series):
        """
        Compute the volume of this ROI.

        The delineated area of each slice is multiplied by the slice spacing of `image_series`. The first and last slice
        contribute half of the slice spacing only.

        :param image_series: The image series the ROI is delineated in.
        :type image_series: ImageSeries
        :return: The volume in cm^3.
        :rtype: float
        """
        slices = sorted(self.slices, key=lambda roi_slice: roi_slice.pos if roi_slice.pos is not None else 0.0)
        spacing = image_series.slice_spacing
        if spacing is None:
            raise GeometryError('The slice spacing of a series with less than 2 images is undefined.')
        volume = 0.0
        for i, roi_slice in enumerate(slices):
            factor = 0.5 if i == 0 or i == len(slices) - 1 else 1.0
            volume += roi_slice.area() * spacing * factor
        # mm^3 to cm^3
        return volume / 1000.0

    def bin_volume(self, image_volume):
        """
        Create a binary volume of this ROI on the images of `image_volume`.

        :param image_volume: The image series to segment.
        :type image_volume: ImageSeries
        :rtype: binary_volume.BinaryVolume
        """
        from binary_volume import BinaryVolume

        return BinaryVolume.from_roi(self, image_volume)


class StructureSet:
    """
    A collection of ROIs sharing one frame of reference.
    """

    def __init__(self, frame_uid=None, image_series=None):
        self.frame_uid = frame_uid
        self.image_series = image_series
        self.rois = []

    def add_roi(self, roi):
        if not isinstance(roi, ROI):
            raise TypeError(f'Expected a ROI, got {type(roi).__name__}.')
        if roi.number in self.roi_numbers:
            raise ValueError(f'A ROI with number {roi.number} already exists.')
        self.rois.append(roi)

    def create_roi(self, name, number=None, **kwargs):
        """
        Create an empty ROI and add it to this structure set.

        :param str name: The name of the new ROI.
        :param number: The ROI number. Defaults to the first unused ROI number.
        :type number: typing.Optional[int]
        :param kwargs: Further attributes of the ROI, see `ROI`.
        :return: The created ROI.
        :rtype: ROI
        """
        numbers = set(self.roi_numbers)
        if number is None:
            number = next(i for i in range(1, len(numbers) + 2) if i not in numbers)
        kwargs.setdefault('frame_uid', self.frame_uid)
        roi = ROI(name, number, **kwargs)
        self.add_roi(roi)
        return roi

    def roi(self, name_or_number):
        """
        Get a ROI by name or by number.

        :param name_or_number: The ROI name or the ROI number.
        :type name_or_number: str | int
        :return: The first matching ROI or None.
        :rtype: typing.Optional[ROI]
        """
        if isinstance(name_or_number, str):
            return next((roi for roi in self.rois if roi.name == name_or_number), None)
        return next((roi for roi in self.rois if roi.number == name_or_number), None)

    @property
    def roi_names(self):
        return [roi.name for roi in self.rois]

    @property
    def roi_numbers(self):
        return [roi.number for roi in self.rois]

    def remove_roi(self, roi):
        """ Remove a ROI, given as object, name or number. """
        if not isinstance(roi, ROI):
            roi = self.roi(roi)
        if roi is None or roi not in self.rois:
            raise ValueError(f'Unknown ROI {roi!r}.')
        self.rois.remove(roi)


class ImageSeries:
    """
    An ordered collection of image geometries belonging to one series.
    """

    def __init__(self, images=None, uid=None):
        """
        Initialize an `ImageSeries` object.

        :param images: The geometries of the images of this series.
        :type images: typing.Optional[typing.List[geometry.ImageGeometry]]
        :param uid: The series instance UID.
        :type uid: typing.Optional[str]
        """
        self.images = list(images) if images else []
        self.uid = uid

    def __len__(self):
        return len(self.images)

    def __iter__(self):
        return iter(self.images)

    def __getitem__(self, item):
        return self.images[item]

    def add_image(self, image):
        self.images.append(image)

    @property
    def positions(self):
        return [image.pos_slice for image in self.images]

    @property
    def slice_spacing(self):
        """
        The most common distance between neighbouring slices.

        :return: The slice spacing in mm, or None if the series holds less than 2 images.
        :rtype: typing.Optional[float]
        """
        if len(self.images) < 2:
            return None
        positions = np.sort(self.positions)
        spacings = np.round(np.abs(np.diff(positions)), 6)
        return float(Counter(spacings.tolist()).most_common(1)[0][0])

    def image(self, pos_or_uid=None):
        """
        Get an image of this series by slice position or by SOP instance UID.

        A slice position matches an image whose position is equal when rounded to 2 decimals. Failing that, the nearest
        image is returned if it lies within a third of the slice spacing.

        :param pos_or_uid: The slice position in mm or the SOP instance UID. If omitted, the first image is returned.
        :type pos_or_uid: float | str | None
        :return: The matching image or None.
        :rtype: typing.Optional[geometry.ImageGeometry]
        """
        if pos_or_uid is None:
            return self.images[0] if self.images else None
        if isinstance(pos_or_uid, str):
            return next((image for image in self.images if image.uid == pos_or_uid), None)

        pos = float(pos_or_uid)
        rounded = round(pos, 2)
        for image in self.images:
            if round(image.pos_slice, 2) == rounded:
                return image
        spacing = self.slice_spacing
        if not self.images or spacing is None:
            return None
        nearest = min(self.images, key=lambda image: abs(image.pos_slice - pos))
        if abs(nearest.pos_slice - pos) <= spacing / 3.0:
            return nearest
        return None


class DoseVolume(ImageSeries):
    """
    A dose grid: a series of dose planes with their stored pixel values.
    """

    def __init__(self, images, pixels, scaling=1.0, uid=None):
        """
        Initialize a `DoseVolume` object.

        :param images: The geometries of the dose planes.
        :type images: typing.List[geometry.ImageGeometry]
        :param pixels: The stored pixel values of shape (frames, rows, columns).
        :type pixels: np.ndarray
        :param float scaling: The dose grid scaling (3004,000E) converting stored values to Gy.
        :param uid: The series instance UID.
        :type uid: typing.Optional[str]
        """
        super().__init__(images, uid)
        pixels = np.asarray(pixels)
        if pixels.ndim != 3 or pixels.shape[0] != len(self.images):
            raise ValueError(f'Expected pixels of shape ({len(self.images)}, rows, columns), got {pixels.shape}.')
        for image in self.images:
            if image.shape != pixels.shape[1:]:
                raise ValueError(f'Dose plane {image!r} does not match the pixel shape {pixels.shape[1:]}.')
        self.pixels = pixels
        self.scaling = float(scaling)

    def dose_array(self, index=None):
        """
        The dose values in Gy, of all planes or of the plane at `index`.

        :rtype: np.ndarray[float]
        """
        pixels = self.pixels if index is None else self.pixels[index]
        return pixels * self.scaling
