import logging

import numpy as np

from binary_image import BinaryImage
from utils import sort_order, sort_by_order

logger = logging.getLogger(__name__)


class BinaryVolume:
    """
    A binary segmentation of an image series: an ordered stack of binary images.

    All binary images of a volume share the same shape, and each refers to a different image. The volume also carries
    the scores it received when compared with a reference segmentation.
    """

    def __init__(self, series, images=None, source=None):
        """
        Initialize a `BinaryVolume` object.

        :param series: The image series (or dose volume) the segmentation refers to.
        :type series: structures.ImageSeries
        :param images: The binary images of the volume.
        :type images: typing.Optional[typing.List[BinaryImage]]
        :param source: The object the segmentation originates from, e.g. a ROI or a dose volume.
        """
        self.series = series
        self.source = source
        self.bin_images = []
        self.dice = None
        self.sensitivity = None
        self.specificity = None
        for bin_image in images or []:
            self.add(bin_image)

    def __repr__(self):
        return f'BinaryVolume(frames={self.frames}, source={self.source!r})'

    @classmethod
    def from_roi(cls, roi, image_volume):
        """
        Segment the images of `image_volume` with the contours of a ROI.

        Each slice of the ROI is rasterized on the image of `image_volume` at the same slice position. Slices without a
        matching image are skipped with a warning.

        :param roi: The segmentation source, e.g. a ROI.
        :type roi: structures.SegmentationSource
        :param image_volume: The images to segment.
        :type image_volume: structures.ImageSeries
        :rtype: BinaryVolume
        """
        bin_volume = cls(image_volume, source=roi)
        missed_slices = 0
        for roi_slice in roi.slices:
            pos = roi_slice.pos
            if pos is None and roi_slice.contours:
                pos = float(roi_slice.contours[0].points[0, 2])
            image = image_volume.image(pos) if pos is not None else None
            if image is None:
                missed_slices += 1
                continue
            bin_volume.add(BinaryImage.from_contours(roi_slice.contours, image))
        if missed_slices > 0:
            logger.warning("The binary volume created from ROI '%s' missed %d slices. %d slices were successfully "
                           "created.", roi.name, missed_slices, bin_volume.frames)
        return bin_volume

    @classmethod
    def from_dose(cls, dose_volume, image_volume, minimum=None, maximum=None):
        """
        Segment the voxels of a dose volume whose dose lies within the given limits.

        Either limit may be omitted, but not both. The dose planes are matched with the images of `image_volume` by
        index.

        :param dose_volume: The dose volume to threshold.
        :type dose_volume: structures.DoseVolume
        :param image_volume: The images the binary images refer to, usually the dose volume itself.
        :type image_volume: structures.ImageSeries
        :param minimum: The lower dose limit in Gy (inclusive).
        :type minimum: typing.Optional[float]
        :param maximum: The upper dose limit in Gy (inclusive).
        :type maximum: typing.Optional[float]
        :rtype: BinaryVolume
        """
        if minimum is None and maximum is None:
            raise ValueError('Need at least one dose limit. Neither minimum nor maximum was specified.')
        if len(image_volume) < len(dose_volume):
            raise ValueError(f'Expected at least {len(dose_volume)} reference images, got {len(image_volume)}.')
        bin_volume = cls(dose_volume, source=dose_volume)
        doses = dose_volume.dose_array()
        for i, dose_image in enumerate(doses):
            marked = np.ones(dose_image.shape, dtype=bool)
            if minimum is not None:
                marked &= dose_image >= float(minimum)
            if maximum is not None:
                marked &= dose_image <= float(maximum)
            bin_volume.add(BinaryImage(marked.astype(np.uint8), image_volume[i]))
        return bin_volume

    @classmethod
    def from_volume(cls, image_volume):
        """
        Segment every pixel of every image of `image_volume`.

        :param image_volume: The images to segment.
        :type image_volume: structures.ImageSeries
        :rtype: BinaryVolume
        """
        bin_volume = cls(image_volume, source=image_volume)
        for image in image_volume:
            bin_volume.add(BinaryImage(np.ones(image.shape, dtype=np.uint8), image))
        return bin_volume

    def add(self, bin_image):
        """
        Append a binary image to this volume.

        :param bin_image: A binary image with the same shape as the images already in the volume.
        :type bin_image: BinaryImage
        """
        if not isinstance(bin_image, BinaryImage):
            raise TypeError(f'Expected a BinaryImage, got {type(bin_image).__name__}.')
        if self.bin_images and bin_image.mask.shape != self.bin_images[0].mask.shape:
            raise ValueError(f'Expected a binary image of shape {self.bin_images[0].mask.shape}, got '
                             f'{bin_image.mask.shape}.')
        self.bin_images.append(bin_image)

    @property
    def frames(self):
        return len(self.bin_images)

    @property
    def columns(self):
        return self.bin_images[0].columns if self.bin_images else None

    @property
    def rows(self):
        return self.bin_images[0].rows if self.bin_images else None

    @property
    def images(self):
        """ The images referenced by the binary images of this volume, in order. """
        return [bin_image.image for bin_image in self.bin_images]

    def narray(self, sort_slices=True):
        """
        Stack the binary images into a 3D array.

        :param bool sort_slices: Order the images by ascending slice position (keeping the current order of images at
            equal positions) instead of using the current order.
        :return: The array of shape (frames, rows, columns), or None if the volume is empty.
        :rtype: typing.Optional[np.ndarray[np.uint8]]
        """
        if not self.bin_images:
            return None
        images = self.bin_images
        if sort_slices:
            images = sort_by_order(images, sort_order([bin_image.pos_slice for bin_image in images]))
        return np.stack([bin_image.mask for bin_image in images]).astype(np.uint8)

    def reorder_images(self, order):
        """
        Rearrange the binary images so that the i-th image becomes the one at `order[i]`.

        :param order: A permutation of the image indices.
        :type order: list[int]
        """
        self.bin_images = sort_by_order(self.bin_images, order)

    def selection(self):
        """
        The linear indices of all segmented voxels of the stacked (sorted) volume.

        :rtype: np.ndarray[int]
        """
        volume = self.narray()
        return np.flatnonzero(volume == 1) if volume is not None else np.array([], dtype=int)

    def to_roi(self, structure_set, name='BinaryVolume', number=None, **kwargs):
        """
        Convert the segmentation to contours and add them as a new ROI to a structure set.

        :param structure_set: The structure set to add the ROI to.
        :type structure_set: structures.StructureSet
        :param str name: The name of the ROI.
        :param number: The ROI number. Defaults to the first unused number.
        :type number: typing.Optional[int]
        :param kwargs: Further attributes of the ROI, see `structures.ROI`.
        :return: The created ROI.
        :rtype: structures.ROI
        """
        roi = structure_set.create_roi(name, number=number, **kwargs)
        for bin_image in self.bin_images:
            bin_image.to_slice(roi)
        return roi
