from __future__ import annotations

import logging
from typing import Any

import requests

from bazaarlink.errors import RouteUnavailable

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (500, 502, 503, 504)


class OsrmClient:
    """Thin client for the OSRM ``route`` service.

    Coordinates go out as ``lng,lat`` pairs, which is what OSRM expects.
    Timeouts and 5xx answers are retried at most ``max_retries`` times, then
    surface as :class:`RouteUnavailable`.
    """

    def __init__(self, *, base_url: str, timeout: float = 3.0, max_retries: int = 1, session: requests.Session | None = None):
        resolved = str(base_url or "").strip().rstrip("/")
        if not resolved:
            raise RouteUnavailable("Routing backend is not configured")
        self.base_url = resolved
        self.timeout = float(timeout)
        self.max_retries = max(0, min(int(max_retries), 2))
        self.session = session or requests.Session()

    def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        attempts = self.max_retries + 1
        last_error = "unknown"
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.Timeout:
                last_error = "timeout"
                logger.warning("osrm_request_timeout attempt=%s/%s", attempt, attempts)
                continue
            except requests.RequestException as exc:
                last_error = str(exc)[:200]
                logger.warning("osrm_request_failed attempt=%s/%s err=%s", attempt, attempts, last_error)
                continue

            status = int(response.status_code)
            if status in _RETRYABLE_STATUS:
                last_error = f"http_{status}"
                logger.warning("osrm_unavailable attempt=%s/%s status=%s", attempt, attempts, status)
                continue
            try:
                data = response.json()
            except Exception:
                data = {}
            if status >= 400:
                message = str((data or {}).get("message") or f"http_{status}")[:200]
                raise RouteUnavailable("Could not calculate delivery route", reason=message)
            return data if isinstance(data, dict) else {}
        raise RouteUnavailable("Could not calculate delivery, please try again", reason=last_error)

    def route(self, origin: tuple[float, float], destination: tuple[float, float]) -> tuple[float, float]:
        """Return ``(distance_m, duration_s)`` of the fastest driving route."""
        (lat1, lng1), (lat2, lng2) = origin, destination
        path = f"/route/v1/driving/{lng1:.6f},{lat1:.6f};{lng2:.6f},{lat2:.6f}"
        data = self._get(path, {"overview": "false", "alternatives": "false", "steps": "false"})
        if str(data.get("code") or "") != "Ok":
            raise RouteUnavailable("No route found between pickup and drop", reason=str(data.get("code") or "unknown"))
        routes = data.get("routes") or []
        if not routes:
            raise RouteUnavailable("No route found between pickup and drop", reason="empty_routes")
        best = routes[0] or {}
        try:
            distance_m = float(best.get("distance"))
            duration_s = float(best.get("duration"))
        except (TypeError, ValueError):
            raise RouteUnavailable("Routing backend returned an unreadable route", reason="bad_payload")
        return distance_m, duration_s
