"""
Simultaneous Truth And Performance Level Estimation (STAPLE).

Warfield, Zou & Wells (2004): an expectation-maximization algorithm which, given the binary segmentations of several
raters, estimates the hidden true segmentation together with the sensitivity and specificity of every rater.
"""
import enum
import logging

import numpy as np

from binary_image import BinaryImage
from binary_volume import BinaryVolume

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 25
# near perfect prior for the sensitivity and specificity of every rater
INITIAL_PERFORMANCE = 0.99999


class StapleState(enum.Enum):
    CONSTRUCTED = 'constructed'
    PARAMETRIZED = 'parametrized'
    ITERATING = 'iterating'
    CONVERGED = 'converged'


class Staple:
    """
    The STAPLE solver for the volumes of a `VolumeAligner`.

    Constructing the solver aligns the volumes of the aligner. `solve` then runs the EM iterations once, after which
    the consensus is installed as master volume of the aligner, and the estimated sensitivity and specificity of every
    rater are written to its volume.

    Iteration stops after `max_iterations` iterations, or as soon as the sum of the voxel weights is exactly equal to
    the sum of the previous iteration.
    """

    def __init__(self, aligner, max_iterations=DEFAULT_MAX_ITERATIONS):
        """
        Initialize a `Staple` object.

        :param aligner: The aligner holding the segmentations of at least 2 raters.
        :type aligner: volume_aligner.VolumeAligner
        :param int max_iterations: The maximum number of EM iterations.
        :raises ValueError: If less than 2 volumes are given or the volumes have different dimensions.
        """
        if len(aligner.volumes) < 2:
            raise ValueError(f'Expected at least 2 volumes, got {len(aligner.volumes)}.')
        if int(max_iterations) < 1:
            raise ValueError(f'Expected at least 1 iteration, got {max_iterations}.')

        volumes = aligner.narrays(sort_slices=False)
        if any(volume is None for volume in volumes):
            raise ValueError('Expected volumes holding at least one binary image each.')
        if len({volume.shape[2] for volume in volumes}) > 1:
            raise ValueError(f'Expected volumes with the same number of columns, got '
                             f'{sorted({volume.shape[2] for volume in volumes})}.')
        if len({volume.shape[1] for volume in volumes}) > 1:
            raise ValueError(f'Expected volumes with the same number of rows, got '
                             f'{sorted({volume.shape[1] for volume in volumes})}.')

        aligner.fill_blanks()
        aligner.sort_volumes()
        self.volumes = aligner.narrays(sort_slices=False)
        if len({volume.shape[0] for volume in self.volumes}) > 1:
            raise ValueError(f'Expected volumes with the same number of frames, got '
                             f'{sorted({volume.shape[0] for volume in self.volumes})}.')

        self.aligner = aligner
        self.max_iterations = int(max_iterations)
        self.shape = self.volumes[0].shape
        self._original_volumes = self.volumes
        self._original_indices = None

        self.vectors = None
        self.decisions = None
        self.n = None
        self.r = None
        self.p = None
        self.q = None
        self.phi = None
        self.weights = None
        self.true_segmentation = None
        self.iterations = 0
        self.state = StapleState.CONSTRUCTED

    def remove_empty_indices(self):
        """
        Drop every slice, row and column which is empty in all rater volumes.

        This reduces the number of voxels entering the EM iterations. The kept indices of each dimension are remembered,
        so the true segmentation is still reported with the full shape. The reduction is always computed from the
        unreduced volumes, so calling this again has no further effect.
        """
        if self.state is not StapleState.CONSTRUCTED:
            raise RuntimeError(f'Empty indices can only be removed before solving, the solver is {self.state.value}.')
        segmented = np.any(np.stack(self._original_volumes) > 0, axis=0)
        kept = []
        for axis in range(segmented.ndim):
            other_axes = tuple(i for i in range(segmented.ndim) if i != axis)
            kept.append(np.flatnonzero(np.any(segmented, axis=other_axes)))
        self._original_indices = kept
        self.volumes = [volume[np.ix_(*kept)] for volume in self._original_volumes]
        logger.debug('Reduced the rater volumes from %s to %s', self.shape, self.volumes[0].shape)

    def _set_parameters(self):
        self.vectors = [volume.ravel() for volume in self.volumes]
        lengths = {len(vector) for vector in self.vectors}
        if len(lengths) > 1:
            raise ValueError(f'The rater vectors have different lengths: {sorted(lengths)}.')
        self.n = len(self.vectors[0])
        self.r = len(self.vectors)
        # decisions[i, j] is the decision of rater j on voxel i
        self.decisions = np.column_stack(self.vectors).astype(int)
        self.p = np.full(self.r, INITIAL_PERFORMANCE)
        self.q = np.full(self.r, INITIAL_PERFORMANCE)
        self.phi = np.zeros((2, self.r))
        self.weights = self.decisions.mean(axis=1) if self.n > 0 else np.zeros(0)
        self.true_segmentation = None
        self.state = StapleState.PARAMETRIZED

    def _expectation(self, weights_previous):
        """
        Estimate the probability of every voxel being part of the true segmentation.

        :param np.ndarray weights_previous: The weights of the previous iteration.
        :return: The new weights. Voxels without support for either class get weight 0.
        :rtype: np.ndarray[float]
        """
        positive = self.decisions == 1
        a = weights_previous * np.prod(np.where(positive, self.p, 1 - self.p), axis=1)
        b = weights_previous * np.prod(np.where(positive, 1 - self.q, self.q), axis=1)
        total = a + b
        weights = np.zeros(self.n)
        np.divide(a, total, out=weights, where=total > 0)
        return weights

    def _maximization(self, weights):
        """ Estimate sensitivity and specificity of every rater. A zero denominator keeps the previous estimate. """
        positive = self.decisions == 1
        weights_sum = weights.sum()
        if weights_sum > 0:
            self.p = (positive.T @ weights) / weights_sum
        complement_sum = (1 - weights).sum()
        if complement_sum > 0:
            self.q = ((~positive).T @ (1 - weights)) / complement_sum

    def solve(self):
        """
        Run the EM iterations and publish the results.

        :return: The consensus volume, which is also installed as master of the aligner.
        :rtype: binary_volume.BinaryVolume
        :raises RuntimeError: If the solver has already converged.
        """
        if self.state is StapleState.CONVERGED:
            raise RuntimeError('The solver has already converged and cannot be solved again.')
        self._set_parameters()

        self.state = StapleState.ITERATING
        weights_current = self.weights
        self.iterations = 0
        while self.iterations < self.max_iterations:
            weights_previous = weights_current
            weights_current = self._expectation(weights_previous)
            self._maximization(weights_current)
            self.iterations += 1
            logger.debug('Iteration %d: sum of weights %s', self.iterations, weights_current.sum())
            if weights_current.sum() - weights_previous.sum() == 0:
                break

        self.weights = weights_current
        # half up, so a weight of 0.5 is segmented
        true_segmentation_vector = np.floor(weights_current + 0.5).astype(np.uint8)
        self._construct_segmentation_volume(true_segmentation_vector)
        self.phi[0] = self.p
        self.phi[1] = self.q
        self.state = StapleState.CONVERGED
        logger.info('STAPLE converged after %d iteration(s) for %d raters and %d voxels', self.iterations, self.r,
                    self.n)
        return self._update_aligner()

    def _construct_segmentation_volume(self, true_segmentation_vector):
        if self._original_indices is None:
            self.true_segmentation = true_segmentation_vector.reshape(self.shape)
        else:
            self.true_segmentation = np.zeros(self.shape, dtype=np.uint8)
            reduced = true_segmentation_vector.reshape(self.volumes[0].shape)
            self.true_segmentation[np.ix_(*self._original_indices)] = reduced

    def _update_aligner(self):
        first = self.aligner.volumes[0]
        consensus = BinaryVolume(first.series, source=self)
        for i, bin_image in enumerate(first.bin_images):
            consensus.add(BinaryImage(self.true_segmentation[i].copy(), bin_image.image))
        self.aligner.master = consensus
        for j, volume in enumerate(self.aligner.volumes):
            volume.sensitivity = float(self.p[j])
            volume.specificity = float(self.q[j])
        return consensus
