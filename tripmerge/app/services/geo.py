"""
Geographic helpers.

Great-circle distance and accessors for the JSON location documents
stored on bookings.
"""

import math
from typing import Optional, Sequence, Tuple

# (lat, lng) in degrees
LatLng = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0

# Average speed used when travel time has to be estimated locally
FALLBACK_AVERAGE_SPEED_KMH = 40.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    # Convert degrees to radians
    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)

    # Haversine formula
    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance(a: LatLng, b: LatLng) -> float:
    """Distance in km between two (lat, lng) pairs."""
    return haversine_distance(a[0], a[1], b[0], b[1])


def path_distance(points: Sequence[LatLng]) -> float:
    """Total km along consecutive points."""
    return sum(distance(points[i - 1], points[i]) for i in range(1, len(points)))


def estimate_duration_minutes(distance_km: float) -> float:
    return distance_km / FALLBACK_AVERAGE_SPEED_KMH * 60


def coordinates_of(location: dict) -> LatLng:
    """Extract (lat, lng) from a stored location document."""
    coords = location["coordinates"]
    return float(coords["lat"]), float(coords["lng"])


def zone_of(location: dict) -> Optional[str]:
    return location.get("zone")
