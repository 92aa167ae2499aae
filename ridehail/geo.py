from math import atan2, cos, radians, sin, sqrt

from ridehail.errors import ValidationFailed

EARTH_RADIUS_KM = 6371


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Approximate straight-line distance in km."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * atan2(sqrt(a), sqrt(1 - a))


def validate_coordinates(lat: float, lng: float) -> None:
    if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        raise ValidationFailed(f"Invalid coordinates ({lat}, {lng})")


def heuristic_eta_minutes(distance_km: float, average_speed_kmph: float) -> int:
    """Minutes to cover ``distance_km`` at the assumed average speed (never below 1)."""
    return max(1, round(distance_km / max(average_speed_kmph, 1e-3) * 60))
