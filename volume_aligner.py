import logging
import math

import numpy as np

from binary_image import BinaryImage
from binary_volume import BinaryVolume
from utils import compare_with

logger = logging.getLogger(__name__)


def _score_key(score):
    """ Sort key placing undefined scores after every defined one in a descending sort. """
    if score is None or math.isnan(score):
        return False, 0.0
    return True, score


class VolumeAligner:
    """
    A set of binary volumes segmenting the same image series, and an optional reference ("master") volume.

    Before the volumes can be compared voxel by voxel they have to be aligned: `fill_blanks` gives every volume a binary
    image for every image referenced by any volume, and `sort_volumes` puts the binary images of all volumes in the
    same order.
    """

    def __init__(self, volumes=None, master=None):
        """
        Initialize a `VolumeAligner` object.

        :param volumes: The volumes to compare.
        :type volumes: typing.Optional[typing.List[binary_volume.BinaryVolume]]
        :param master: The reference volume the others are scored against.
        :type master: typing.Optional[binary_volume.BinaryVolume]
        """
        self.volumes = []
        for volume in volumes or []:
            self.add(volume)
        self._master = None
        if master is not None:
            self.master = master

    @property
    def master(self):
        return self._master

    @master.setter
    def master(self, volume):
        if not isinstance(volume, BinaryVolume):
            raise TypeError(f'Expected a BinaryVolume as master, got {type(volume).__name__}.')
        self._master = volume

    def add(self, volume):
        if not isinstance(volume, BinaryVolume):
            raise TypeError(f'Expected a BinaryVolume, got {type(volume).__name__}.')
        self.volumes.append(volume)

    def _all_volumes(self):
        return self.volumes + ([self._master] if self._master is not None else [])

    def fill_blanks(self):
        """
        Add an empty binary image to every volume lacking one for an image referenced by any volume (master included).

        Images are told apart by identity. The empty binary images are appended to the end of each volume.
        """
        if not self.volumes:
            return
        volumes = self._all_volumes()
        # ordered union of the referenced images
        images = {}
        for volume in volumes:
            for image in volume.images:
                images.setdefault(id(image), image)

        added = 0
        for volume in volumes:
            present = {id(image) for image in volume.images}
            for key, image in images.items():
                if key not in present:
                    volume.add(BinaryImage(np.zeros(image.shape, dtype=np.uint8), image))
                    added += 1
        logger.debug('Filled %d blank slice(s) across %d volume(s)', added, len(volumes))

    def sort_volumes(self):
        """
        Order the binary images of every volume like those of the first volume.

        The master volume is left as is.

        :raises ValueError: If the volumes hold different numbers of binary images.
        :raises RuntimeError: If a binary image of the first volume has no image reference.
        """
        if len(self.volumes) < 2:
            return
        frames = [volume.frames for volume in self.volumes]
        if len(set(frames)) > 1:
            raise ValueError(f'All volumes must have the same number of binary images, got {frames}.')
        desired_order = self.volumes[0].images
        if any(image is None for image in desired_order):
            raise RuntimeError('One or more image references of the first volume are missing. Unable to sort binary '
                               'images without image references.')
        for volume in self.volumes[1:]:
            volume.reorder_images(compare_with(volume.images, desired_order))

    def narrays(self, sort_slices=True):
        """
        The 3D arrays of all volumes (master excluded).

        :param bool sort_slices: Order the slices by position, see `BinaryVolume.narray`.
        :rtype: list[typing.Optional[np.ndarray[np.uint8]]]
        """
        return [volume.narray(sort_slices) for volume in self.volumes]

    def _master_array(self):
        if self._master is None:
            raise ValueError('A master volume is required for scoring.')
        master = self._master.narray()
        if master is None:
            raise ValueError('The master volume is empty.')
        return master

    def _volume_array(self, volume, master):
        narray = volume.narray()
        if narray is None or narray.shape != master.shape:
            raise ValueError(f'Volume {volume!r} does not match the master volume of shape {master.shape}. Align the '
                             f'volumes with fill_blanks() first.')
        return narray

    def score_dice(self):
        """
        Compute the Dice coefficient 2|A∩B| / (|A| + |B|) of every volume against the master volume.

        The score is stored in the `dice` attribute of each volume. It is nan if both volumes are empty.
        """
        master = self._master_array() == 1
        for volume in self.volumes:
            segmented = self._volume_array(volume, master) == 1
            total = int(np.count_nonzero(master)) + int(np.count_nonzero(segmented))
            if total == 0:
                logger.warning('Dice is undefined for %r: both the volume and the master are empty.', volume)
                volume.dice = float('nan')
            else:
                volume.dice = 2 * int(np.count_nonzero(master & segmented)) / total

    def score_sensitivity_specificity(self):
        """
        Compute sensitivity and specificity of every volume against the master volume.

        Sensitivity is the fraction of master foreground voxels that are segmented in the volume, specificity the
        fraction of master background voxels that are not. The scores are stored in the `sensitivity` and
        `specificity` attributes of each volume. A score is nan if the master has no voxels of the respective kind.
        """
        master = self._master_array() == 1
        positives = int(np.count_nonzero(master))
        negatives = master.size - positives
        if positives == 0:
            logger.warning('Sensitivity is undefined: the master volume has no segmented voxels.')
        if negatives == 0:
            logger.warning('Specificity is undefined: the master volume has no unsegmented voxels.')
        for volume in self.volumes:
            segmented = self._volume_array(volume, master) == 1
            volume.sensitivity = (int(np.count_nonzero(segmented[master])) / positives
                                  if positives else float('nan'))
            volume.specificity = (int(np.count_nonzero(~segmented[~master])) / negatives
                                  if negatives else float('nan'))

    def by_sensitivity(self):
        """ The volumes in descending order of sensitivity, unscored volumes last. """
        return sorted(self.volumes, key=lambda volume: _score_key(volume.sensitivity), reverse=True)

    def by_specificity(self):
        """ The volumes in descending order of specificity, unscored volumes last. """
        return sorted(self.volumes, key=lambda volume: _score_key(volume.specificity), reverse=True)
