"""
Distance and duration estimation using the Haversine formula.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine
(OSRM / Google Maps) to keep the project self-contained and runnable
locally without external API keys.  Duration assumes a constant average
city speed.  In production this module would be replaced by a
routing-service client that returns actual road distances and ETAs.

Complexity: O(1) per call.
"""

import math

from .entities import Coordinate
from .errors import InvalidCoordinateError

EARTH_RADIUS_KM = 6_371.0
DEFAULT_AVERAGE_SPEED_KMH = 30.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def estimate_distance(origin: Coordinate, destination: Coordinate) -> float:
    """Great-circle distance between two validated coordinates, in km."""
    for point in (origin, destination):
        if not isinstance(point, Coordinate):
            raise InvalidCoordinateError(f"Expected a Coordinate, got {point!r}")
    return haversine_km(
        origin.latitude, origin.longitude,
        destination.latitude, destination.longitude,
    )


def estimate_duration(
    distance_km: float, average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH
) -> float:
    """Minutes needed to cover *distance_km* at *average_speed_kmh*."""
    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be positive")
    if distance_km < 0:
        raise ValueError("distance_km must not be negative")
    return distance_km / average_speed_kmh * 60
