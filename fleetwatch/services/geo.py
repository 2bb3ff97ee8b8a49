"""
Geographic utilities: haversine distance, marker interpolation, dead-reckoning.
"""
from math import radians, cos, sin, asin, sqrt

EARTH_RADIUS_M = 6371000
METERS_PER_DEG_LAT = 111320  # ~111km per degree
KNOTS_TO_MPS = 0.514444
KNOTS_TO_KMH = 1.852


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance in meters between two lat/lon points.
    Uses the haversine formula for great-circle distance.
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))

    return EARTH_RADIUS_M * c


def ease_out_cubic(t: float) -> float:
    """Ease-out curve on [0, 1]: fast start, slow arrival. Clamped."""
    t = max(0.0, min(1.0, t))
    return 1 - (1 - t) ** 3


def interpolate(
    start_lat: float,
    start_lon: float,
    end_lat: float,
    end_lon: float,
    progress: float,
) -> tuple[float, float]:
    """
    Point between start and end at eased progress (0 = start, 1 = end).

    Progress outside [0, 1] is clamped so the result never passes the end.
    """
    eased = ease_out_cubic(progress)
    return (
        start_lat + (end_lat - start_lat) * eased,
        start_lon + (end_lon - start_lon) * eased,
    )


def dead_reckon(
    lat: float,
    lon: float,
    speed_knots: float,
    course_deg: float,
    elapsed_s: float,
) -> tuple[float, float]:
    """
    Project a position forward at constant speed and course.

    Planar approximation, fine over the few seconds it is used for:
        dlat = d * cos(course)
        dlon = d * sin(course) / cos(lat)
    with d the travelled distance in degrees of latitude.
    """
    if elapsed_s <= 0 or speed_knots <= 0:
        return lat, lon

    distance_deg = speed_knots * KNOTS_TO_MPS * elapsed_s / METERS_PER_DEG_LAT
    course = radians(course_deg)
    cos_lat = cos(radians(lat))

    new_lat = lat + distance_deg * cos(course)
    if abs(cos_lat) < 1e-9:
        # At the poles longitude is undefined, keep it
        return new_lat, lon
    new_lon = lon + distance_deg * sin(course) / cos_lat
    return new_lat, new_lon
