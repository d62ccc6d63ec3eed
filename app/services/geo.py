"""Great-circle distance between item locations.

``None`` means "unknown": free-text or missing locations never produce a
distance, and in particular never a distance of zero.
"""
from __future__ import annotations

import math
from typing import Any, Optional

from app.domain.items import Coordinates, parse_location

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_km(a: Any, b: Any) -> Optional[float]:
    loc_a = parse_location(a)
    loc_b = parse_location(b)
    if not isinstance(loc_a, Coordinates) or not isinstance(loc_b, Coordinates):
        return None
    return haversine_km(loc_a, loc_b)
