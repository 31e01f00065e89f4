from __future__ import annotations

import math
from typing import Any, NamedTuple

from bazaarlink.errors import InvalidLocation
from bazaarlink.services.geo.osrm_client import OsrmClient
from bazaarlink.utils.dispatch_settings import DispatchSettings, get_dispatch_settings

EARTH_RADIUS_KM = 6371.0


class Coordinate(NamedTuple):
    lat: float
    lng: float


def coerce_coordinate(value: Any, *, label: str = "location") -> Coordinate:
    """Accept ``(lat, lng)``, ``Coordinate`` or a dict with lat/lng keys."""
    if value is None:
        raise InvalidLocation(f"{label} is missing")
    if isinstance(value, dict):
        lat = value.get("lat", value.get("latitude"))
        lng = value.get("lng", value.get("lon", value.get("longitude")))
    else:
        try:
            lat, lng = value
        except (TypeError, ValueError):
            raise InvalidLocation(f"{label} must be a (lat, lng) pair")
    if lat is None or lng is None or isinstance(lat, bool) or isinstance(lng, bool):
        raise InvalidLocation(f"{label} is missing latitude or longitude")
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidLocation(f"{label} has non-numeric coordinates")
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidLocation(f"{label} has non-finite coordinates")
    if not (-90.0 <= lat_f <= 90.0) or not (-180.0 <= lng_f <= 180.0):
        raise InvalidLocation(f"{label} is out of range")
    return Coordinate(lat_f, lng_f)


def is_valid_coordinate(value: Any) -> bool:
    try:
        coerce_coordinate(value)
        return True
    except InvalidLocation:
        return False


def haversine_km(origin: Any, destination: Any) -> float:
    a = coerce_coordinate(origin, label="origin")
    b = coerce_coordinate(destination, label="destination")
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(dlng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def build_routing_client(settings: DispatchSettings) -> OsrmClient:
    return OsrmClient(
        base_url=settings.osrm_base_url,
        timeout=float(settings.routing_timeout_ms) / 1000.0,
        max_retries=settings.routing_max_retries,
    )


def distance_and_time(origin: Any, destination: Any, *, settings: DispatchSettings | None = None) -> tuple[float, float]:
    """Distance in km and travel time in minutes between two points.

    Uses the configured metric only; an OSRM failure raises RouteUnavailable
    instead of degrading to a straight-line figure.
    """
    cfg = settings or get_dispatch_settings()
    a = coerce_coordinate(origin, label="origin")
    b = coerce_coordinate(destination, label="destination")
    if cfg.routing_provider == "haversine":
        km = haversine_km(a, b)
        minutes = km / float(cfg.haversine_avg_speed_kmh) * 60.0
        return round(km, 3), round(minutes, 2)
    distance_m, duration_s = build_routing_client(cfg).route(a, b)
    return round(distance_m / 1000.0, 3), round(duration_s / 60.0, 2)
