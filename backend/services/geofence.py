import math
from dataclasses import dataclass
from typing import Any, Mapping

from backend.config import DEFAULT_GEOFENCE_RADIUS_METERS

EARTH_RADIUS_METERS = 6_371_000


@dataclass(frozen=True)
class GeofenceResult:
    verified: bool
    distance_meters: float | None
    radius_meters: float | None
    # "coordinates" | "link" | "skipped"
    method: str


class LocationUnconfiguredError(ValueError):
    """The gathering requires a location check but has neither coordinates nor a link."""


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def is_valid_coordinate(latitude: Any, longitude: Any) -> bool:
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        return False
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        return False
    if math.isnan(latitude) or math.isnan(longitude):
        return False
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def requires_location_check(location_mode: str, participant_mode: str | None) -> bool:
    if location_mode == "Physical":
        return True
    if location_mode == "Hybrid":
        return (participant_mode or "Physical") == "Physical"
    return False


def verify_location(
    gathering: Mapping[str, Any],
    participant_mode: str | None,
    latitude: float,
    longitude: float,
) -> GeofenceResult:
    if not requires_location_check(gathering.get("location_mode"), participant_mode):
        return GeofenceResult(verified=True, distance_meters=None, radius_meters=None, method="skipped")

    target_lat = gathering.get("latitude")
    target_lon = gathering.get("longitude")
    if target_lat is not None and target_lon is not None:
        radius = gathering.get("radius_meters")
        radius = float(radius) if radius is not None else DEFAULT_GEOFENCE_RADIUS_METERS
        distance = haversine_meters(latitude, longitude, float(target_lat), float(target_lon))
        return GeofenceResult(
            verified=distance <= radius,
            distance_meters=distance,
            radius_meters=radius,
            method="coordinates",
        )

    # A link-declared location cannot be checked geographically; accepted as verified.
    if (gathering.get("location_link") or "").strip():
        return GeofenceResult(verified=True, distance_meters=None, radius_meters=None, method="link")

    raise LocationUnconfiguredError(
        f"Gathering {gathering.get('id')} requires a location check but has no location configured."
    )
