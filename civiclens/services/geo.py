"""
CivicLens
Geospatial helpers: great-circle distance and coordinate validation.
"""

import math

from civiclens.core.exceptions import ValidationError

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two WGS84 points."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def squared_planar_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Cheap ranking metric; only meaningful for points a few hundred metres apart."""
    return (lat1 - lat2) ** 2 + (lng1 - lng2) ** 2


def parse_coordinates(lat, lng) -> tuple[float, float]:
    """Coerce request values into a finite, in-range ``(lat, lng)`` pair.

    Raises ValidationError naming the offending field.
    """
    if lat is None or lat == "":
        raise ValidationError("lat is required", details={"lat": "required"})
    if lng is None or lng == "":
        raise ValidationError("lng is required", details={"lng": "required"})
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise ValidationError("lat and lng must be numbers") from None

    if not math.isfinite(lat_f) or not -90.0 <= lat_f <= 90.0:
        raise ValidationError("lat must be between -90 and 90", details={"lat": "out of range"})
    if not math.isfinite(lng_f) or not -180.0 <= lng_f <= 180.0:
        raise ValidationError("lng must be between -180 and 180", details={"lng": "out of range"})
    return lat_f, lng_f
