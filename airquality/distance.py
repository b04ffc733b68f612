#file: airquality/distance.py

import math
from typing import Iterable, Tuple

from airquality.errors import InvalidMeasurement

EARTH_RADIUS_METERS = 6_371_000

# Nodes sample every 10 seconds; 8.33 m/s (30 km/h) is the fastest plausible movement.
MEASURING_FREQUENCY_SECONDS = 10
MAX_PERMITTED_SPEED_MPS = 8.33


def validate_coordinates(latitude: float, longitude: float) -> None:
    """Reject coordinates that cannot be placed on a map."""
    for name, value, limit in (("latitude", latitude, 90), ("longitude", longitude, 180)):
        if value is None or not math.isfinite(value) or abs(value) > limit:
            raise InvalidMeasurement(f"{name} must be within [-{limit}, {limit}], got {value!r}")


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> int:
    """Great-circle distance between two points, rounded to the nearest meter."""
    validate_coordinates(lat1, lon1)
    validate_coordinates(lat2, lon2)

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_METERS * c)


def total_distance(points: Iterable[Tuple[float, float]],
                   max_speed_mps: float = MAX_PERMITTED_SPEED_MPS,
                   sample_interval_seconds: float = MEASURING_FREQUENCY_SECONDS) -> int:
    """
    Sum the distance along a GPS trace of (latitude, longitude) points.

    A hop longer than max_speed_mps * sample_interval_seconds is a signal jump,
    not travel: it contributes nothing instead of being capped.
    """
    max_hop = max_speed_mps * sample_interval_seconds
    total = 0
    previous = None
    for point in points:
        if previous is not None:
            hop = haversine_meters(previous[0], previous[1], point[0], point[1])
            if hop <= max_hop:
                total += hop
        previous = point
    return total
