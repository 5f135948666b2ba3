import logging

import numpy as np

from utils import is_segmented

logger = logging.getLogger(__name__)

# Order in which the 8 neighbours of a 3x3 neighbourhood (flattened row by row) are probed, given the direction the
# current pixel was arrived from. The sweep is clockwise and starts next to the previous pixel.
_REORDER = {
    'west': np.array([0, 1, 2, 5, 8, 7, 6, 3]),
    'nw': np.array([1, 2, 5, 8, 7, 6, 3, 0]),
    'north': np.array([2, 5, 8, 7, 6, 3, 0, 1]),
    'ne': np.array([5, 8, 7, 6, 3, 0, 1, 2]),
    'east': np.array([8, 7, 6, 3, 0, 1, 2, 5]),
    'se': np.array([7, 6, 3, 0, 1, 2, 5, 8]),
    'south': np.array([6, 3, 0, 1, 2, 5, 8, 7]),
    'sw': np.array([3, 0, 1, 2, 5, 8, 7, 6]),
}

# The direction a neighbour is arrived from when stepping to it, by its position in the 3x3 neighbourhood.
_ARRIVED_FROM = {0: 'se', 1: 'south', 2: 'sw', 3: 'east', 5: 'west', 6: 'ne', 7: 'north', 8: 'nw'}

# Counter-clockwise probing order of the 4-connected external walk: (direction, row offset, column offset).
_EXTERNAL_STEPS = {
    'north': [('east', 0, 1), ('north', -1, 0), ('west', 0, -1), ('south', 1, 0)],
    'east': [('south', 1, 0), ('east', 0, 1), ('north', -1, 0), ('west', 0, -1)],
    'south': [('west', 0, -1), ('south', 1, 0), ('east', 0, 1), ('north', -1, 0)],
    'west': [('north', -1, 0), ('west', 0, -1), ('south', 1, 0), ('east', 0, 1)],
}

_ROI = 1
_INTERNAL = 2
_EXTERNAL = 3


def _first_foreground(mask):
    """ The (row, column) of the first foreground pixel in raster order. """
    rows, columns = np.nonzero(mask)
    return int(rows[0]), int(columns[0])


def _trace_boundary(mask):
    """
    Trace the border of the first structure of a padded mask with the radial sweep algorithm.

    Starting at the first foreground pixel in raster order, the 8 neighbours of the current pixel are swept clockwise,
    beginning next to the pixel the walk arrived from, and the first foreground neighbour becomes the next border pixel.
    The walk is closed once it is about to revisit the second pixel while standing on the first one.

    :param mask: A binary mask with a border of background pixels.
    :type mask: np.ndarray
    :return: The corner pixels of the border and all pixels of the border, both as lists of (row, column).
    :rtype: (list[(int, int)], list[(int, int)])
    """
    start = _first_foreground(mask)
    pixels = [start]
    directions = []
    row, column = start
    arrived_from = 'west'
    max_steps = 4 * mask.size
    while True:
        order = _REORDER[arrived_from]
        neighbours = mask[row - 1:row + 2, column - 1:column + 2].ravel()[order]
        foreground = np.flatnonzero(neighbours)
        if len(foreground) == 0:
            # isolated pixel
            break
        position = int(order[foreground[0]])
        pixel = (row + position // 3 - 1, column + position % 3 - 1)
        if len(pixels) > 1 and pixel == pixels[1] and pixels[-1] == pixels[0]:
            pixels.pop()
            break
        row, column = pixel
        arrived_from = _ARRIVED_FROM[position]
        pixels.append(pixel)
        directions.append(arrived_from)
        if len(pixels) > max_steps:
            raise RuntimeError(f'Unable to close the contour starting at {start}.')

    # reduce to the pixels where the direction changes
    corners = [pixels[0]]
    previous_direction = directions[0] if directions else None
    for pixel, direction in zip(pixels[1:], directions[1:]):
        if direction != previous_direction:
            corners.append(pixel)
            previous_direction = direction
    return corners, pixels


def _external_contour(mask):
    """
    Walk the background pixels surrounding the first structure of a padded mask.

    The walk starts at the background pixel west of the first foreground pixel and probes its 4 neighbours
    counter-clockwise, moving to the first background pixel, until it returns to the start.

    :param mask: A binary mask with a border of background pixels.
    :type mask: np.ndarray
    :return: The pixels of the external contour as (row, column).
    :rtype: list[(int, int)]
    """
    n_rows, n_columns = mask.shape
    start_row, start_column = _first_foreground(mask)
    start = (start_row, start_column - 1)
    pixels = [start]
    row, column = start
    last_direction = 'north'
    max_steps = 4 * mask.size
    while True:
        for direction, row_offset, column_offset in _EXTERNAL_STEPS[last_direction]:
            next_row, next_column = row + row_offset, column + column_offset
            if 0 <= next_row < n_rows and 0 <= next_column < n_columns and mask[next_row, next_column] == 0:
                row, column = next_row, next_column
                last_direction = direction
                pixels.append((row, column))
                break
        else:
            raise RuntimeError(f'External contour walk got stuck at {(row, column)}.')
        if (row, column) == start:
            break
        if len(pixels) > max_steps:
            raise RuntimeError(f'Unable to close the external contour starting at {start}.')
    return pixels


def _roi_indices(mask, boundary):
    """
    Determine all pixels enclosed by a traced border, including the border itself.

    The border and its external contour are drawn into a label image, which is then scanned row by row. Pixels between
    two external contour pixels that enclose at least one border pixel belong to the structure.

    :param mask: The padded binary mask the border was traced in.
    :type mask: np.ndarray
    :param boundary: All pixels of the traced border as (row, column).
    :type boundary: list[(int, int)]
    :return: The row and column indices of the enclosed pixels.
    :rtype: (np.ndarray[int], np.ndarray[int])
    """
    external_rows, external_columns = np.array(_external_contour(mask)).T
    boundary_rows, boundary_columns = np.array(boundary).T

    labels = np.zeros(mask.shape, dtype=np.uint8)
    labels[external_rows, external_columns] = _EXTERNAL
    labels[boundary_rows, boundary_columns] = _INTERNAL

    for row in range(external_rows.min(), external_rows.max() + 1):
        labelled = np.flatnonzero(labels[row])
        if len(labelled) == 0:
            continue
        external_left = None
        internal_found = False
        for column in range(labelled[0], labelled[-1] + 1):
            label = labels[row, column]
            if label == _EXTERNAL and not internal_found:
                external_left = column
            elif label == _INTERNAL:
                internal_found = True
            elif label == _EXTERNAL and internal_found:
                if external_left is not None:
                    labels[row, external_left + 1:column] = _ROI
                external_left = column
                internal_found = False
    return np.nonzero(labels == _ROI)


def trace_contours(mask):
    """
    Extract the outer contour of every structure in a binary mask.

    Structures are processed one at a time: the border of the first structure in raster order is traced, reduced to its
    corner pixels and recorded, after which every pixel enclosed by the border is removed from a working copy of the
    mask. This repeats until fewer than 3 foreground pixels remain. Borders of less than 3 pixels enclose no area and
    are removed without being recorded.

    Holes are not detected: a structure with a hole yields only its outer contour.

    :param mask: A 2D binary mask of shape (rows, columns).
    :type mask: np.ndarray
    :return: One contour per structure, each given as the column indices and the row indices of its corners.
    :rtype: list[(np.ndarray[int], np.ndarray[int])]
    """
    mask = np.asarray(mask)
    if mask.ndim != 2:
        raise ValueError(f'Expected a 2D mask, got {mask.ndim} dimensions.')

    # a border of background pixels keeps every 3x3 neighbourhood inside the array
    padded = np.zeros((mask.shape[0] + 2, mask.shape[1] + 2), dtype=np.uint8)
    padded[1:-1, 1:-1] = mask > 0

    contours = []
    while is_segmented(padded):
        corners, boundary = _trace_boundary(padded)
        boundary_rows, boundary_columns = np.array(boundary).T
        if len(boundary) >= 3:
            contours.append(corners)
            roi_rows, roi_columns = _roi_indices(padded, boundary)
            if len(roi_rows) < 3:
                raise RuntimeError(f'Unexpected number of structure pixels ({len(roi_rows)}) for the contour starting '
                                   f'at {boundary[0]}.')
            padded[roi_rows, roi_columns] = 0
        padded[boundary_rows, boundary_columns] = 0

    logger.debug('Traced %d contour(s) in a %dx%d mask', len(contours), mask.shape[0], mask.shape[1])
    return [(np.array([column for _, column in corners]) - 1, np.array([row for row, _ in corners]) - 1)
            for corners in contours]
