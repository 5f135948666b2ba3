from collections import deque

import numpy as np

# Marker values used while filling a polygon.
_EMPTY = 0
_LINE = 1
_FILL = 2


def _line_indices(c0, r0, c1, r1):
    """
    Compute the pixels of a straight line between two pixels with the Bresenham line algorithm.

    :param int c0: The column index of the start pixel.
    :param int r0: The row index of the start pixel.
    :param int c1: The column index of the end pixel.
    :param int r1: The row index of the end pixel.
    :return: The column and row indices of all pixels on the line, including both end pixels.
    :rtype: (list[int], list[int])
    """
    steep = abs(r1 - r0) > abs(c1 - c0)
    if steep:
        c0, r0 = r0, c0
        c1, r1 = r1, c1
    if c0 > c1:
        c0, c1 = c1, c0
        r0, r1 = r1, r0
    delta_c = c1 - c0
    delta_r = abs(r1 - r0)
    error = delta_c // 2
    r_step = 1 if r0 < r1 else -1
    r = r0
    columns, rows = [], []
    for c in range(c0, c1 + 1):
        if steep:
            columns.append(r)
            rows.append(c)
        else:
            columns.append(c)
            rows.append(r)
        error -= delta_r
        if error < 0:
            r += r_step
            error += delta_c
    return columns, rows


def rasterize_lines(column_indices, row_indices, mask, value):
    """
    Draw the closed polygon through the given pixels into a mask.

    Consecutive pixels are connected by straight lines, and the last pixel is connected to the first one. Pixels of a
    line that fall outside of the mask are dropped.

    :param column_indices: The column indices of the polygon corners.
    :type column_indices: array_like
    :param row_indices: The row indices of the polygon corners.
    :type row_indices: array_like
    :param mask: The 2D mask of shape (rows, columns) to draw into. It is modified in place.
    :type mask: np.ndarray
    :param int value: The value to write into the pixels of the lines.
    :return: The modified mask.
    :rtype: np.ndarray
    """
    column_indices = np.asarray(column_indices, dtype=int)
    row_indices = np.asarray(row_indices, dtype=int)
    if column_indices.shape != row_indices.shape:
        raise ValueError(f'Expected index arrays of equal length, got {len(column_indices)} and {len(row_indices)}.')
    if mask.ndim != 2:
        raise ValueError(f'Expected a 2D mask, got {mask.ndim} dimensions.')

    n_rows, n_columns = mask.shape
    for i in range(len(column_indices)):
        columns, rows = _line_indices(int(column_indices[i - 1]), int(row_indices[i - 1]),
                                      int(column_indices[i]), int(row_indices[i]))
        columns, rows = np.array(columns), np.array(rows)
        inside = (columns >= 0) & (columns < n_columns) & (rows >= 0) & (rows < n_rows)
        mask[rows[inside], columns[inside]] = value
    return mask


def flood_fill(seed_column, seed_row, mask, fill_value):
    """
    Replace the connected region of the seed pixel with `fill_value`.

    All pixels that hold the same value as the seed pixel and are 4-connected to it are filled. The fill is iterative
    and works on whole row spans: for each dequeued pixel the span of equal pixels to its west and east is filled, and
    the equal pixels directly north and south of the span are queued. A seed outside of the mask is clamped to the
    nearest border pixel.

    :param int seed_column: The column index of the seed pixel.
    :param int seed_row: The row index of the seed pixel.
    :param mask: The 2D mask of shape (rows, columns) to fill. It is modified in place.
    :type mask: np.ndarray
    :param int fill_value: The value to fill the region with.
    :return: The modified mask.
    :rtype: np.ndarray
    """
    if mask.ndim != 2:
        raise ValueError(f'Expected a 2D mask, got {mask.ndim} dimensions.')
    n_rows, n_columns = mask.shape
    seed_column = min(max(int(seed_column), 0), n_columns - 1)
    seed_row = min(max(int(seed_row), 0), n_rows - 1)

    existing_value = mask[seed_row, seed_column]
    if existing_value == fill_value:
        return mask

    queue = deque([(seed_column, seed_row)])
    while queue:
        column, row = queue.popleft()
        if mask[row, column] != existing_value:
            continue
        west = column
        while west > 0 and mask[row, west - 1] == existing_value:
            west -= 1
        east = column
        while east < n_columns - 1 and mask[row, east + 1] == existing_value:
            east += 1
        mask[row, west:east + 1] = fill_value

        for next_row in (row - 1, row + 1):
            if 0 <= next_row < n_rows:
                for next_column in np.flatnonzero(mask[next_row, west:east + 1] == existing_value):
                    queue.append((west + int(next_column), next_row))
    return mask


def fill_polygon(x, y, z, geometry):
    """
    Rasterize a closed polygon into a filled binary mask of an image.

    The polygon corners are converted to pixel indices of the image, the polygon border is drawn and the region around
    the mean corner index is flood filled. If the fill reaches pixel (0, 0), the seed was located outside of the polygon
    and the fill covered the surroundings instead, so the remaining pixels are taken as the interior.

    Self-intersecting or very thin polygons may be classified incorrectly, as may a polygon that encloses pixel (0, 0).

    :param x: The x-coordinates of the polygon corners in mm.
    :type x: array_like
    :param y: The y-coordinates of the polygon corners in mm.
    :type y: array_like
    :param z: The z-coordinates of the polygon corners in mm.
    :type z: array_like
    :param geometry: The geometry of the image the polygon is located in.
    :type geometry: geometry.ImageGeometry
    :return: A mask of shape (rows, columns) holding 1 inside the polygon (including its border) and 0 elsewhere.
    :rtype: np.ndarray[np.uint8]
    """
    if len(x) < 3:
        raise ValueError(f'Expected at least 3 polygon corners, got {len(x)}.')
    column_indices, row_indices = geometry.coordinates_to_indices(x, y, z)

    mask = np.full(geometry.shape, _EMPTY, dtype=np.uint8)
    rasterize_lines(column_indices, row_indices, mask, _LINE)
    flood_fill(int(np.mean(column_indices)), int(np.mean(row_indices)), mask, _FILL)

    if mask[0, 0] != _FILL:
        interior = mask != _EMPTY
    else:
        # inverted fill
        interior = mask != _FILL
    return interior.astype(np.uint8)
