"""WGS84 coordinate helpers for flight path statistics."""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """WGS84 coordinate."""
    lat: float  # degrees, [-90, 90]
    lon: float  # degrees, [-180, 180]


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """True if lat/lon lie inside the WGS84 ranges."""
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two GPS points in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))
