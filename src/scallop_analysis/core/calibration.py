"""Scale calibration for converting pixels to meters on the seafloor."""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from ..models import ImageProperties

logger = logging.getLogger(__name__)

# EXIF tags
_GPS_IFD = 0x8825
_GPS_ALTITUDE = 6
_EXIF_IFD = 0x8769
_FOCAL_LENGTH_35MM = 0xA405


@dataclass
class CameraMetadata:
    """Camera pose and optics for one image."""

    altitude: float  # meters above the seafloor
    pitch: float = 0.0  # degrees
    roll: float = 0.0  # degrees
    focal_length: float = 0.0  # pixels


def properties_without_metadata(width_px: int, height_px: int) -> ImageProperties:
    """
    Image properties when no camera metadata is used.

    All size bounds are then interpreted directly in pixels.
    """
    return ImageProperties(
        avg_pixel_size_m=1.0,
        img_width_m=float(width_px),
        img_height_m=float(height_px),
        has_metadata=False,
    )


def properties_from_camera(
    width_px: int,
    height_px: int,
    camera: CameraMetadata,
) -> ImageProperties:
    """
    Compute the average ground pixel size from camera altitude and pose.

    Uses a pinhole model: the optical-axis distance to the seafloor grows
    with pitch and roll as altitude / (cos(pitch) * cos(roll)), and one pixel
    covers distance / focal_length meters at that range.

    Args:
        width_px: Image width in pixels
        height_px: Image height in pixels
        camera: Altitude (m), pitch/roll (degrees), focal length (pixels)

    Returns:
        ImageProperties; has_metadata is False if the camera values are unusable
    """
    if camera.altitude <= 0 or camera.focal_length <= 0:
        return properties_without_metadata(width_px, height_px)
    if abs(camera.pitch) >= 89.0 or abs(camera.roll) >= 89.0:
        return properties_without_metadata(width_px, height_px)

    tilt = math.cos(math.radians(camera.pitch)) * math.cos(math.radians(camera.roll))
    distance = camera.altitude / tilt
    pixel_size = distance / camera.focal_length

    return ImageProperties(
        avg_pixel_size_m=pixel_size,
        img_width_m=width_px * pixel_size,
        img_height_m=height_px * pixel_size,
        has_metadata=True,
    )


def _rational(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


def read_camera_metadata(
    path: Union[str, Path],
    focal_length: float = 0.0,
) -> Optional[CameraMetadata]:
    """
    Read altitude from an image file's EXIF GPS block.

    Pitch and roll are not part of standard EXIF and default to zero.

    Args:
        path: Image file
        focal_length: Focal length in pixels, used when the file has none

    Returns:
        CameraMetadata, or None if the file has no usable altitude
    """
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            gps = exif.get_ifd(_GPS_IFD)
            sub = exif.get_ifd(_EXIF_IFD)
            width = img.width
    except (OSError, UnidentifiedImageError) as e:
        logger.debug("Could not read metadata from %s: %s", path, e)
        return None

    altitude = _rational(gps.get(_GPS_ALTITUDE))
    if altitude is None:
        return None

    if focal_length <= 0:
        # 35mm-equivalent focal length -> pixels, assuming a 36mm sensor width
        f35 = _rational(sub.get(_FOCAL_LENGTH_35MM))
        if f35:
            focal_length = f35 / 36.0 * width

    return CameraMetadata(altitude=altitude, focal_length=focal_length)


def calculate_image_properties(
    width_px: int,
    height_px: int,
    use_metadata: bool = False,
    camera: Optional[CameraMetadata] = None,
    metadata_path: Optional[Union[str, Path]] = None,
    focal_length: float = 0.0,
) -> ImageProperties:
    """
    Main entry point for the geometry normalizer.

    Camera values supplied directly take precedence over a metadata file.
    When ``use_metadata`` is False the result is in pixel units.
    """
    if not use_metadata:
        return properties_without_metadata(width_px, height_px)

    if camera is None and metadata_path is not None:
        camera = read_camera_metadata(metadata_path, focal_length)
    if camera is None:
        return properties_without_metadata(width_px, height_px)
    if camera.focal_length <= 0:
        camera = CameraMetadata(
            altitude=camera.altitude,
            pitch=camera.pitch,
            roll=camera.roll,
            focal_length=focal_length,
        )
    return properties_from_camera(width_px, height_px, camera)


def search_radius_pixels(
    props: ImageProperties,
    min_radius: float,
    max_radius: float,
) -> Tuple[float, float]:
    """Convert search radius bounds (meters, or pixels without metadata) to pixels."""
    return props.m_to_px(min_radius), props.m_to_px(max_radius)


def compute_resize_factor(
    min_radius_px: float,
    max_pixels_for_min_radius: float,
    resize_factor_required: float,
) -> float:
    """
    Downscale factor applied before detection to bound processing cost.

    Only downscales: returns 1.0 unless the factor needed to bring the
    minimum radius to ``max_pixels_for_min_radius`` is below
    ``resize_factor_required``.
    """
    if min_radius_px <= 0:
        return 1.0
    factor = max_pixels_for_min_radius / min_radius_px
    if factor < resize_factor_required:
        return factor
    return 1.0
