import math
from typing import Any, Sequence

from ..core.config import settings
from ..domain.models import Location

EARTH_RADIUS_METERS = 6_371_000


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Calculate haversine distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def is_valid_coordinates(lat: Any, lng: Any) -> bool:
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def get_default_location() -> Location:
    return Location(lat=settings.DEFAULT_LAT, lng=settings.DEFAULT_LNG)


def convert_dms_to_dd(dms: Sequence[float], ref: str) -> float:
    """GPS degrees/minutes/seconds to decimal degrees; S and W are negative."""
    degrees, minutes, seconds = (float(v) for v in dms[:3])
    dd = degrees + minutes / 60 + seconds / 3600
    if ref in ("S", "W"):
        dd = -dd
    return dd


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"
