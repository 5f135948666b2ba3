import typing

import numpy as np

from utils import round_half_up

# Image Orientation (Patient) of an axial image: rows along +x, columns along +y.
AXIAL_COSINES = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


class GeometryError(RuntimeError):
    """
    Raised when image geometry is inconsistent, e.g. missing direction cosines or an image that cannot be located.
    """


class Coordinate(typing.NamedTuple):
    """
    A point in the patient coordinate system, in mm.

    The DICOM coordinate system convention is followed:
    - The x-axis extends from the patient's right (-x) to left (+x).
    - The y-axis extends from the patient's anterior (-y) to posterior (+y).
    - The z-axis extends from inferior (-z) to superior (+z).
    """
    x: float
    y: float
    z: float

    def translate(self, x, y, z):
        """
        Move this coordinate by the given offset vector.

        :param float x: The offset along the x-axis in mm.
        :param float y: The offset along the y-axis in mm.
        :param float z: The offset along the z-axis in mm.
        :return: The translated coordinate.
        :rtype: Coordinate
        """
        return Coordinate(self.x + x, self.y + y, self.z + z)


class ImageGeometry:
    """
    The geometry of a single image plane.

    An image geometry describes how the pixel grid of an image is placed in the patient coordinate system. Pixel (0, 0)
    is centred at (`pos_x`, `pos_y`, `pos_slice`). The first three direction cosines give the direction of a row (the
    direction of increasing column index), the last three the direction of a column (increasing row index), as defined
    by the Image Orientation (Patient) element (0020,0037).

    Two image geometries refer to the same image only if they are the same object, even if all their attributes are
    equal. Binary images and volumes rely on this to match slices across segmentations.
    """

    def __init__(self, columns, rows, col_spacing, row_spacing, pos_x, pos_y, pos_slice, cosines=AXIAL_COSINES,
                 uid=None):
        """
        Initialize an `ImageGeometry` object.

        :param int columns: The number of columns (0028,0011).
        :param int rows: The number of rows (0028,0010).
        :param float col_spacing: The distance between column centres in mm, i.e. the horizontal pixel spacing.
        :param float row_spacing: The distance between row centres in mm, i.e. the vertical pixel spacing.
        :param float pos_x: The x-coordinate of the centre of pixel (0, 0) in mm.
        :param float pos_y: The y-coordinate of the centre of pixel (0, 0) in mm.
        :param float pos_slice: The slice position of the image in mm.
        :param cosines: The six direction cosines of the first row and the first column.
        :type cosines: typing.Sequence[float]
        :param uid: The SOP instance UID of the image, if known.
        :type uid: typing.Optional[str]
        """
        if int(columns) < 1 or int(rows) < 1:
            raise ValueError(f'Expected a positive number of columns and rows, got {columns} and {rows}.')
        self.columns = int(columns)
        self.rows = int(rows)
        self.col_spacing = float(col_spacing)
        self.row_spacing = float(row_spacing)
        self.pos_x = float(pos_x)
        self.pos_y = float(pos_y)
        self.pos_slice = float(pos_slice)
        self.cosines = None if cosines is None else tuple(float(cosine) for cosine in cosines)
        self.uid = uid

    def __repr__(self):
        return (f'ImageGeometry(columns={self.columns}, rows={self.rows}, pos_slice={self.pos_slice}, '
                f'uid={self.uid!r})')

    @property
    def shape(self):
        """ The shape (rows, columns) of a pixel array of this image. """
        return self.rows, self.columns

    @property
    def pixel_area(self):
        """
        The area of a single pixel.

        :return: The pixel area in mm^2.
        :rtype: float
        """
        return self.row_spacing * self.col_spacing

    def _checked_cosines(self):
        if self.cosines is None or len(self.cosines) != 6:
            raise GeometryError(f'Invalid direction cosines for image {self.uid!r}. Expected 6 values, got '
                                f'{self.cosines!r}.')
        return self.cosines

    def coordinates_to_indices(self, x, y, z):
        """
        Convert physical coordinates to column and row indices of this image.

        No interpolation is performed: a coordinate located between pixel centres is assigned to the nearest pixel.
        Indices are not clipped, so coordinates outside of the image yield indices outside of the pixel grid.

        :param x: The x-coordinates in mm.
        :type x: array_like
        :param y: The y-coordinates in mm.
        :type y: array_like
        :param z: The z-coordinates in mm.
        :type z: array_like
        :return: The column and row indices.
        :rtype: (np.ndarray[int], np.ndarray[int])
        """
        x, y, z = np.asarray(x, dtype=float), np.asarray(y, dtype=float), np.asarray(z, dtype=float)
        if not x.shape == y.shape == z.shape:
            raise ValueError(f'Expected coordinate arrays of equal length, got {x.shape}, {y.shape} and {z.shape}.')
        cosines = self._checked_cosines()
        dx, dy, dz = x - self.pos_x, y - self.pos_y, z - self.pos_slice
        column_indices = (dx * cosines[0] + dy * cosines[1] + dz * cosines[2]) / self.col_spacing
        row_indices = (dx * cosines[3] + dy * cosines[4] + dz * cosines[5]) / self.row_spacing
        return round_half_up(column_indices), round_half_up(row_indices)

    def coordinates_from_indices(self, column_indices, row_indices):
        """
        Convert column and row indices of this image to physical coordinates.

        :param column_indices: The column indices.
        :type column_indices: array_like
        :param row_indices: The row indices.
        :type row_indices: array_like
        :return: The x-, y- and z-coordinates in mm.
        :rtype: (np.ndarray[float], np.ndarray[float], np.ndarray[float])
        """
        column_indices = np.asarray(column_indices, dtype=float)
        row_indices = np.asarray(row_indices, dtype=float)
        if column_indices.shape != row_indices.shape:
            raise ValueError(f'Expected index arrays of equal length, got {column_indices.shape} and '
                             f'{row_indices.shape}.')
        cosines = self._checked_cosines()
        columns_mm = column_indices * self.col_spacing
        rows_mm = row_indices * self.row_spacing
        x = self.pos_x + columns_mm * cosines[0] + rows_mm * cosines[3]
        y = self.pos_y + columns_mm * cosines[1] + rows_mm * cosines[4]
        z = self.pos_slice + columns_mm * cosines[2] + rows_mm * cosines[5]
        return x, y, z
