"""Great-circle distance helpers for the drop-off geofence."""
from __future__ import annotations

from math import atan2, cos, isnan, radians, sin, sqrt

EARTH_RADIUS_MILES = 3959.0


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in miles between two points given in decimal degrees.

    NaN inputs propagate to a NaN result.
    """
    d_lat = radians(lat2 - lat1)
    d_lng = radians(lng2 - lng1)
    a = sin(d_lat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lng / 2) ** 2
    # Rounding can push `a` a hair past 1 for antipodal points.
    if not isnan(a):
        a = min(a, 1.0)
    return EARTH_RADIUS_MILES * 2 * atan2(sqrt(a), sqrt(1 - a))


def within_geofence(distance_miles: float, max_distance_miles: float) -> bool:
    """True when the distance is inside the radius; NaN is never inside."""
    return distance_miles <= max_distance_miles
