"""
Great-circle distance helpers shared by the listing store and search.

All inputs are WGS84 degrees. Listings store coordinates as
[longitude, latitude] (GeoJSON order); these helpers take lat before lng,
so callers unpack explicitly.
"""

import math
from typing import List, Tuple

EARTH_RADIUS_M = 6371000  # mean radius, meters

# Float slack so points on the circle never fall just outside the box.
_BOX_SLACK_DEG = 1e-9


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in meters (no API call)."""
    phi1 = lat1 * math.pi / 180
    phi2 = lat2 * math.pi / 180
    dphi = (lat2 - lat1) * math.pi / 180
    dlambda = (lng2 - lng1) * math.pi / 180

    a = (math.sin(dphi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bounding_box(
    lat: float, lng: float, radius_meters: float
) -> Tuple[float, float, List[Tuple[float, float]]]:
    """
    Degree box containing every point within radius_meters of (lat, lng).

    Returns (min_lat, max_lat, lng_ranges). lng_ranges holds one
    (min_lng, max_lng) pair, or two when the box wraps the antimeridian.
    Near the poles the longitude range is the whole circle.

    Used as a SQL pre-filter only; exact filtering is haversine_meters.
    """
    # Angular radius on the same sphere haversine_meters uses.
    angular = radius_meters / EARTH_RADIUS_M
    dlat = math.degrees(angular) + _BOX_SLACK_DEG
    min_lat = max(-90.0, lat - dlat)
    max_lat = min(90.0, lat + dlat)

    cos_lat = math.cos(math.radians(lat))
    if min_lat <= -90.0 or max_lat >= 90.0 or cos_lat < 1e-6:
        return min_lat, max_lat, [(-180.0, 180.0)]

    # Widest longitude offset reached anywhere on the circle, which lies
    # poleward of the centre latitude.
    sin_ratio = math.sin(angular) / cos_lat
    if sin_ratio >= 1.0:
        return min_lat, max_lat, [(-180.0, 180.0)]
    dlng = math.degrees(math.asin(sin_ratio)) + _BOX_SLACK_DEG
    if dlng >= 180.0:
        return min_lat, max_lat, [(-180.0, 180.0)]

    min_lng = lng - dlng
    max_lng = lng + dlng
    if min_lng < -180.0:
        return min_lat, max_lat, [(min_lng + 360.0, 180.0), (-180.0, max_lng)]
    if max_lng > 180.0:
        return min_lat, max_lat, [(min_lng, 180.0), (-180.0, max_lng - 360.0)]
    return min_lat, max_lat, [(min_lng, max_lng)]
