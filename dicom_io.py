import logging
import os
from os.path import join

import numpy as np
from pydicom import dcmread
from pydicom.dataset import Dataset
from pydicom.sequence import Sequence
from shapely import Polygon
from shapely.geometry.polygon import orient

from geometry import GeometryError, ImageGeometry
from structures import Contour, ImageSeries, ROI, Slice, StructureSet

logger = logging.getLogger(__name__)

CT_IMAGE_STORAGE_SOP_CLASS_UID = '1.2.840.10008.5.1.4.1.1.2'
RT_STRUCTURE_SET_STORAGE_SOP_CLASS_UID = '1.2.840.10008.5.1.4.1.1.481.3'
DICOM_EXTENSION = '.dcm'

_ROI_GENERATION_ALGORITHM = 'AUTOMATIC'
_ROI_DISPLAY_COLOR = [255, 0, 0]  # red
_CONTOUR_GEOMETRIC_TYPE = 'CLOSED_PLANAR'
_RT_ROI_INTERPRETED_TYPE = 'CTV'
_ROI_INTERPRETER = ''

# decimals of contour coordinates written to Contour Data, keeping each value within 16 characters
_CONTOUR_DECIMALS = 4


def _dicom_files(input_path):
    for root, _, files in os.walk(input_path):
        for file in sorted(files):
            if file.endswith(DICOM_EXTENSION):
                yield join(root, file)


def _image_geometry(ds):
    """
    Create the geometry of an image from its DICOM header.

    :param Dataset ds: The image dataset.
    :rtype: ImageGeometry
    """
    row_spacing, col_spacing = [float(spacing) for spacing in ds.PixelSpacing]
    pos_x, pos_y, pos_slice = [float(pos) for pos in ds.ImagePositionPatient]
    cosines = [float(cosine) for cosine in ds.ImageOrientationPatient] if 'ImageOrientationPatient' in ds else None
    return ImageGeometry(ds.Columns, ds.Rows, col_spacing, row_spacing, pos_x, pos_y, pos_slice, cosines,
                         ds.SOPInstanceUID)


def load_image_series(input_path):
    """
    Read the geometry of all CT images in a folder.

    Only the headers are read, the pixel data is skipped.

    :param str input_path: The path to a folder containing CT images in DICOM format.
    :return: The image series, ordered by slice position.
    :rtype: ImageSeries
    """
    images = []
    series_uid = None
    for file_path in _dicom_files(input_path):
        ds = dcmread(file_path, stop_before_pixels=True)
        if ds.SOPClassUID == CT_IMAGE_STORAGE_SOP_CLASS_UID:
            images.append(_image_geometry(ds))
            series_uid = ds.get('SeriesInstanceUID', series_uid)
    images.sort(key=lambda image: image.pos_slice)
    logger.debug('Loaded %d image(s) from %s', len(images), input_path)
    return ImageSeries(images, series_uid)


def load_structure_set(rt_path, image_series=None):
    """
    Read the ROIs of an RT struct.

    The contours of each ROI are grouped into slices by their referenced image. If `image_series` is given, every slice
    is attached to its image, by UID or, failing that, by the position of its contours.

    :param str rt_path: The path to the RT struct.
    :param image_series: The images the structure set was delineated on.
    :type image_series: typing.Optional[ImageSeries]
    :return: The structure set.
    :rtype: StructureSet
    """
    ds = dcmread(rt_path)
    frame_uid = ds.get('FrameOfReferenceUID')
    structure_set = StructureSet(frame_uid, image_series)

    observations = {observation.ReferencedROINumber: observation
                    for observation in ds.get('RTROIObservationsSequence', [])}
    roi_contours = {roi_contour.ReferencedROINumber: roi_contour for roi_contour in ds.get('ROIContourSequence', [])}

    for structure_set_roi in ds.get('StructureSetROISequence', []):
        number = structure_set_roi.ROINumber
        observation = observations.get(number, Dataset())
        roi_contour = roi_contours.get(number, Dataset())
        roi = ROI(structure_set_roi.ROIName, number,
                  algorithm=structure_set_roi.get('ROIGenerationAlgorithm', _ROI_GENERATION_ALGORITHM),
                  interpreter=str(observation.get('ROIInterpreter', _ROI_INTERPRETER)),
                  interpreted_type=observation.get('RTROIInterpretedType', ''),
                  color=[int(value) for value in roi_contour.get('ROIDisplayColor', _ROI_DISPLAY_COLOR)],
                  frame_uid=structure_set_roi.get('ReferencedFrameOfReferenceUID', frame_uid))

        slices = {}
        for contour in roi_contour.get('ContourSequence', []):
            contour_images = contour.get('ContourImageSequence', [])
            uid = contour_images[0].ReferencedSOPInstanceUID if contour_images else None
            points = np.array(contour.ContourData, dtype=float).reshape(-1, 3)
            if uid not in slices:
                slices[uid] = Slice(uid)
            slices[uid].add_contour(Contour(points, contour.get('ContourNumber'),
                                            contour.get('ContourGeometricType', _CONTOUR_GEOMETRIC_TYPE)))

        for roi_slice in slices.values():
            if image_series is not None:
                roi_slice.image = image_series.image(roi_slice.uid) if roi_slice.uid else None
                if roi_slice.image is None:
                    try:
                        roi_slice.attach_to(image_series)
                    except GeometryError as error:
                        logger.warning("ROI '%s': %s", roi.name, error)
            roi.add_slice(roi_slice)
        structure_set.add_roi(roi)

    logger.debug('Loaded %d ROI(s) from %s', len(structure_set.rois), rt_path)
    return structure_set


def _load_dicom(input_path):
    """
    Extracts the RT struct and the CT images of a folder.

    :param str input_path: the path to a folder containing CT images and exactly one RT struct in DICOM format.
    :return: the RT struct, the path to the RT struct and the image series
    :rtype: (Dataset, str, ImageSeries)
    """
    rt_struct = None
    rt_struct_path = None
    images = []
    for file_path in _dicom_files(input_path):
        ds = dcmread(file_path, stop_before_pixels=True)
        sop_class_uid = ds.SOPClassUID
        if sop_class_uid == CT_IMAGE_STORAGE_SOP_CLASS_UID:
            images.append(_image_geometry(ds))
        elif sop_class_uid == RT_STRUCTURE_SET_STORAGE_SOP_CLASS_UID:
            if rt_struct is not None:
                raise ValueError(f'Expected exactly one RT struct in {input_path}, found {rt_struct_path} and '
                                 f'{file_path}.')
            rt_struct = dcmread(file_path)
            rt_struct_path = file_path
    if rt_struct is None:
        raise ValueError(f'No RT struct found in {input_path}.')
    images.sort(key=lambda image: image.pos_slice)
    return rt_struct, rt_struct_path, ImageSeries(images)


def _next_number(sequence, keyword):
    return max([int(item.get(keyword, 0)) for item in sequence], default=0) + 1


def _add_structure_set_roi(rt_struct, roi):
    if 'StructureSetROISequence' not in rt_struct:
        rt_struct.StructureSetROISequence = Sequence()
    structure_set_roi = Dataset()
    structure_set_roi.ROINumber = _next_number(rt_struct.StructureSetROISequence, 'ROINumber')
    structure_set_roi.ReferencedFrameOfReferenceUID = roi.frame_uid or rt_struct.get('FrameOfReferenceUID', '')
    structure_set_roi.ROIName = roi.name
    structure_set_roi.ROIGenerationAlgorithm = roi.algorithm
    rt_struct.StructureSetROISequence.append(structure_set_roi)

    return structure_set_roi.ROINumber


def _oriented_points(contour):
    """ The contour points ordered counter-clockwise in the xy-plane, without a closing duplicate. """
    points = contour.points
    if len(points) < 3 or Polygon(points[:, :2]).area == 0:
        return points
    exterior = np.array(orient(Polygon(points[:, :2]), sign=1.0).exterior.coords)[:-1]
    return np.column_stack([exterior, np.full(len(exterior), points[0, 2])])


def _add_roi_contour(rt_struct, roi, image_series, contour_geometric_type, referenced_roi_number):
    if 'ROIContourSequence' not in rt_struct:
        rt_struct.ROIContourSequence = Sequence()
    roi_contour = Dataset()  # the 3D contour
    roi_contour.ROIDisplayColor = list(roi.color)
    roi_contour.ReferencedROINumber = referenced_roi_number
    roi_contour.ContourSequence = Sequence()
    number = 0
    for roi_slice in roi.slices:
        for roi_contour_2d in roi_slice.contours:
            contour_points = np.round(_oriented_points(roi_contour_2d), _CONTOUR_DECIMALS)
            uid = roi_slice.uid
            if uid is None:
                image = image_series.image(float(contour_points[0, 2]))
                if image is None:
                    raise GeometryError(f"No image found for a contour of ROI '{roi.name}' at z = "
                                        f"{contour_points[0, 2]}.")
                uid = image.uid

            contour = Dataset()  # the 2D contour
            contour.ContourGeometricType = contour_geometric_type
            contour.NumberOfContourPoints = len(contour_points)
            contour.ContourNumber = number
            contour.ContourData = contour_points.flatten().tolist()

            contour_image = Dataset()  # the image containing the contour
            contour_image.ReferencedSOPClassUID = CT_IMAGE_STORAGE_SOP_CLASS_UID
            contour_image.ReferencedSOPInstanceUID = uid
            contour.ContourImageSequence = Sequence([contour_image])

            roi_contour.ContourSequence.append(contour)
            number += 1
    rt_struct.ROIContourSequence.append(roi_contour)


def _add_rt_roi_observation(rt_struct, referenced_roi_number, roi_observation_label, rt_roi_interpreted_type,
                            roi_interpreter):
    if 'RTROIObservationsSequence' not in rt_struct:
        rt_struct.RTROIObservationsSequence = Sequence()
    rt_roi_observation = Dataset()
    rt_roi_observation.ObservationNumber = _next_number(rt_struct.RTROIObservationsSequence, 'ObservationNumber')
    rt_roi_observation.ReferencedROINumber = referenced_roi_number
    rt_roi_observation.ROIObservationLabel = roi_observation_label
    rt_roi_observation.RTROIInterpretedType = rt_roi_interpreted_type
    rt_roi_observation.ROIInterpreter = roi_interpreter

    rt_struct.RTROIObservationsSequence.append(rt_roi_observation)


def add_roi(input_path, roi, contour_geometric_type=_CONTOUR_GEOMETRIC_TYPE,
            rt_roi_interpreted_type=_RT_ROI_INTERPRETED_TYPE, roi_interpreter=_ROI_INTERPRETER):
    """
    Adds a ROI to the RT struct.

    This function takes an input path to a folder containing CT images and exactly one RT struct in DICOM format, along
    with a ROI, e.g. the consensus of a STAPLE analysis converted with `BinaryVolume.to_roi`. All contours of the ROI
    are oriented counter-clockwise and added to the RT struct, which is saved in place. The ROI is given the next free
    ROI number of the RT struct.

    :param str input_path: path to a folder containing CT images and exactly one RT struct in DICOM format
    :param ROI roi: the ROI to add
    :param str contour_geometric_type: the type of the contours
    :param str rt_roi_interpreted_type: the type of the ROI, used if the ROI has none
    :param str roi_interpreter: the name of the person performing the interpretation of the ROI, used if the ROI has
        none
    :return: the ROI number in the RT struct
    :rtype: int
    """
    rt_struct, rt_struct_path, image_series = _load_dicom(input_path)

    roi_number = _add_structure_set_roi(rt_struct, roi)
    _add_roi_contour(rt_struct, roi, image_series, contour_geometric_type, roi_number)
    _add_rt_roi_observation(rt_struct, roi_number, roi.name, roi.interpreted_type or rt_roi_interpreted_type,
                            roi.interpreter or roi_interpreter)

    rt_struct.save_as(rt_struct_path, enforce_file_format=True)
    logger.info("Added ROI '%s' with %d contour(s) as number %d to %s", roi.name, roi.num_contours, roi_number,
                rt_struct_path)
    return roi_number


def extract_rt_ct_paths(input_path):
    """
    Extract the path to the RT-struct and a CT-image from a path to a CT-scan in DICOM format.

    :param input_path: The path to the CT-scan.
    :type input_path: str
    :return: The paths to the RT-struct and a CT-image.
    :rtype: (str, str)
    """
    rt_path, ct_path = None, None
    for file_path in _dicom_files(input_path):
        sop_class_uid = dcmread(file_path, stop_before_pixels=True).SOPClassUID
        if sop_class_uid == CT_IMAGE_STORAGE_SOP_CLASS_UID:
            ct_path = file_path
        elif sop_class_uid == RT_STRUCTURE_SET_STORAGE_SOP_CLASS_UID:
            rt_path = file_path
    return rt_path, ct_path
