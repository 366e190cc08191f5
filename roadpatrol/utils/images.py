"""
Photo preprocessing before upload: validation, JPEG compression and EXIF GPS
extraction (Pillow).
"""
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from ..core.config import settings
from ..core.exceptions import ValidationError
from ..domain.models import Location
from ..domain.results import Degraded, Failed, Outcome, Success
from .geo import convert_dms_to_dd, is_valid_coordinates

logger = logging.getLogger(__name__)

GPS_IFD = 0x8825
GPS_LATITUDE_REF = 1
GPS_LATITUDE = 2
GPS_LONGITUDE_REF = 3
GPS_LONGITUDE = 4


@dataclass
class Photo:
    """An image file as picked by the user."""
    content: bytes
    filename: str = "photo.jpg"
    content_type: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.content)


def validate_photo(photo: Photo, max_bytes: Optional[int] = None) -> None:
    """
    Raises:
        ValidationError: not an image, or larger than the size limit
    """
    max_bytes = max_bytes or settings.MAX_PHOTO_BYTES
    if not photo.content_type or not photo.content_type.startswith("image/"):
        raise ValidationError("Please select an image file", field="photo")
    if photo.size > max_bytes:
        raise ValidationError(
            f"Image must be less than {max_bytes // (1024 * 1024)}MB", field="photo"
        )


def compress_image(
    photo: Photo,
    max_width: Optional[int] = None,
    quality: Optional[int] = None,
) -> Photo:
    """
    Downscale to ``max_width`` (keeping aspect ratio) and re-encode as JPEG.

    Raises:
        ValidationError: content is not a readable image
    """
    max_width = max_width or settings.PHOTO_MAX_WIDTH
    quality = quality or settings.PHOTO_JPEG_QUALITY
    try:
        img = Image.open(io.BytesIO(photo.content))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Error processing photo: {e}", field="photo")

    if img.width > max_width:
        height = round(img.height * max_width / img.width)
        img = img.resize((max_width, height), Image.LANCZOS)

    if img.mode != "RGB":
        img = img.convert("RGB")

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality)
    logger.debug(f"Compressed {photo.filename}: {photo.size} -> {out.tell()} bytes")
    return Photo(content=out.getvalue(), filename=photo.filename, content_type="image/jpeg")


def extract_exif_gps(photo: Photo) -> Outcome[Location]:
    """
    Read GPS coordinates from the photo's EXIF block.

    Returns:
        Success(Location) when present, Degraded(None) when the image has no
        usable GPS tags, Failed when the image cannot be read.
    """
    try:
        img = Image.open(io.BytesIO(photo.content))
        gps = img.getexif().get_ifd(GPS_IFD)
    except (UnidentifiedImageError, OSError) as e:
        return Failed(reason="unreadable image", error=e)

    lat_dms = gps.get(GPS_LATITUDE)
    lng_dms = gps.get(GPS_LONGITUDE)
    if not lat_dms or not lng_dms:
        return Degraded(value=None, reason="no GPS data in photo")

    try:
        lat = convert_dms_to_dd(lat_dms, gps.get(GPS_LATITUDE_REF, "N"))
        lng = convert_dms_to_dd(lng_dms, gps.get(GPS_LONGITUDE_REF, "E"))
    except (TypeError, ValueError, ZeroDivisionError) as e:
        return Degraded(value=None, reason=f"malformed GPS data: {e}")

    if not is_valid_coordinates(lat, lng):
        return Degraded(value=None, reason="GPS coordinates out of range")
    return Success(Location(lat=lat, lng=lng))
