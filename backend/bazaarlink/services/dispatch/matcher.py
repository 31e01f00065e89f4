from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from bazaarlink.errors import OutOfRange, RouteUnavailable
from bazaarlink.services.geo import coerce_coordinate, distance_and_time, haversine_km, is_valid_coordinate
from bazaarlink.utils.dispatch_settings import DispatchSettings, get_dispatch_settings

logger = logging.getLogger(__name__)

DistanceFn = Callable[[Any, Any], float]


@dataclass(frozen=True)
class AgentMatch:
    agent_id: int
    distance_km: float


def _default_distance_fn(settings: DispatchSettings) -> DistanceFn:
    def _km(origin, destination) -> float:
        km, _minutes = distance_and_time(origin, destination, settings=settings)
        return float(km)

    return _km


def _agent_location(agent: Any):
    if isinstance(agent, dict):
        return agent.get("location")
    location = getattr(agent, "live_location", None)
    return location() if callable(location) else location


def _agent_id(agent: Any) -> int:
    if isinstance(agent, dict):
        return int(agent.get("agent_id") or agent.get("user_id"))
    return int(getattr(agent, "user_id"))


def eligible_agents(
    origin: Any,
    agents: Iterable[Any],
    radius_km: float | None = None,
    *,
    settings: DispatchSettings | None = None,
    distance_fn: DistanceFn | None = None,
) -> list[AgentMatch]:
    """Agents whose live location lies within ``radius_km`` of ``origin``, nearest first.

    Agents that never reported a location are left out. A routing failure for
    one agent drops that agent only.
    """
    cfg = settings or get_dispatch_settings()
    radius = float(radius_km if radius_km is not None else cfg.match_radius_km)
    pickup = coerce_coordinate(origin, label="order origin")
    measure = distance_fn or _default_distance_fn(cfg)
    # Road distance is never shorter than great-circle distance.
    prefilter = distance_fn is None and cfg.routing_provider == "osrm"

    matches: list[AgentMatch] = []
    for agent in agents:
        location = _agent_location(agent)
        if not is_valid_coordinate(location):
            continue
        if prefilter and haversine_km(pickup, location) > radius:
            continue
        try:
            km = float(measure(pickup, location))
        except RouteUnavailable as exc:
            logger.warning("matcher_route_unavailable agent_id=%s err=%s", _agent_id(agent), exc.message)
            continue
        if km <= radius:
            matches.append(AgentMatch(agent_id=_agent_id(agent), distance_km=round(km, 3)))
    matches.sort(key=lambda m: (m.distance_km, m.agent_id))
    return matches


def assert_within_radius(
    origin: Any,
    agent_location: Any,
    radius_km: float | None = None,
    *,
    settings: DispatchSettings | None = None,
    distance_fn: DistanceFn | None = None,
) -> float:
    """Return the measured distance or raise OutOfRange."""
    cfg = settings or get_dispatch_settings()
    radius = float(radius_km if radius_km is not None else cfg.match_radius_km)
    pickup = coerce_coordinate(origin, label="order origin")
    agent_at = coerce_coordinate(agent_location, label="agent location")
    measure = distance_fn or _default_distance_fn(cfg)
    km = float(measure(pickup, agent_at))
    if km > radius:
        raise OutOfRange(
            f"Pickup point is {km:.1f} km away, outside the {radius:g} km delivery radius",
            distance_km=round(km, 3),
            radius_km=radius,
        )
    return km
