from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)


VEHICLE_TIERS = ("two_wheeler", "three_wheeler", "four_wheeler")

# tier -> (per km, per minute)
DEFAULT_RATES: dict[str, tuple[Decimal, Decimal]] = {
    "two_wheeler": (Decimal("5"), Decimal("1")),
    "three_wheeler": (Decimal("8"), Decimal("1.5")),
    "four_wheeler": (Decimal("12"), Decimal("2")),
}

# (inclusive upper bound of order amount, retailer percent); None bound = everything above.
DEFAULT_COST_SHARE_BANDS: tuple[tuple[Decimal | None, int], ...] = (
    (Decimal("1000"), 70),
    (Decimal("3000"), 50),
    (Decimal("5000"), 30),
    (None, 0),
)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0, maximum: float = 1_000_000.0) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = float(default)
    else:
        try:
            value = float(raw)
        except Exception:
            value = float(default)
    return max(minimum, min(value, maximum))


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = Decimal(raw)
    except (InvalidOperation, ValueError):
        return default
    return value if value >= 0 else default


def _rates_from_env() -> dict[str, tuple[Decimal, Decimal]]:
    rates = dict(DEFAULT_RATES)
    raw = (os.getenv("DELIVERY_RATES_JSON") or "").strip()
    if not raw:
        return rates
    try:
        parsed = json.loads(raw)
    except Exception:
        logger.warning("delivery_rates_json_invalid using_defaults=true")
        return rates
    if not isinstance(parsed, dict):
        return rates
    for tier, pair in parsed.items():
        key = str(tier or "").strip().lower()
        if key not in VEHICLE_TIERS:
            continue
        try:
            per_km, per_min = pair
            rates[key] = (Decimal(str(per_km)), Decimal(str(per_min)))
        except Exception:
            logger.warning("delivery_rate_invalid tier=%s", key)
    return rates


def _bands_from_env() -> tuple[tuple[Decimal | None, int], ...]:
    raw = (os.getenv("COST_SHARE_BANDS_JSON") or "").strip()
    if not raw:
        return DEFAULT_COST_SHARE_BANDS
    try:
        parsed = json.loads(raw)
        bands: list[tuple[Decimal | None, int]] = []
        for upper, pct in parsed:
            bound = None if upper is None else Decimal(str(upper))
            bands.append((bound, max(0, min(int(pct), 100))))
    except Exception:
        logger.warning("cost_share_bands_json_invalid using_defaults=true")
        return DEFAULT_COST_SHARE_BANDS
    # First matching band wins, so bands must ascend with the open band last.
    bands.sort(key=lambda band: (band[0] is None, band[0] if band[0] is not None else Decimal("0")))
    if not bands or bands[-1][0] is not None:
        bands.append((None, 0))
    return tuple(bands)


@dataclass(frozen=True)
class DispatchSettings:
    match_radius_km: float = 20.0
    delivery_code_length: int = 4
    delivery_code_ttl_minutes: int = 10
    delivered_visible_minutes: int = 10
    fixed_surcharge: Decimal = Decimal("5")
    min_order_amount: Decimal = Decimal("0")
    rates: dict = field(default_factory=lambda: dict(DEFAULT_RATES))
    cost_share_bands: tuple = DEFAULT_COST_SHARE_BANDS
    routing_provider: str = "osrm"
    osrm_base_url: str = "https://router.project-osrm.org"
    routing_timeout_ms: int = 3000
    routing_max_retries: int = 1
    haversine_avg_speed_kmh: float = 20.0
    integrations_mode: str = "disabled"
    notify_queue_enabled: bool = False
    code_expiry_sweep_seconds: int = 60


def get_dispatch_settings() -> DispatchSettings:
    provider = (os.getenv("ROUTING_PROVIDER") or "osrm").strip().lower()
    if provider not in ("osrm", "haversine"):
        logger.warning("routing_provider_unknown value=%s using=osrm", provider)
        provider = "osrm"
    mode = (os.getenv("INTEGRATIONS_MODE") or "disabled").strip().lower()
    if mode not in ("disabled", "sandbox", "live"):
        mode = "disabled"
    return DispatchSettings(
        match_radius_km=_env_float("MATCH_RADIUS_KM", 20.0, minimum=0.1, maximum=500.0),
        delivery_code_length=_env_int("DELIVERY_CODE_LENGTH", 4, minimum=4, maximum=8),
        delivery_code_ttl_minutes=_env_int("DELIVERY_CODE_TTL_MINUTES", 10, minimum=1, maximum=1440),
        delivered_visible_minutes=_env_int("DELIVERED_VISIBLE_MINUTES", 10, minimum=0, maximum=10080),
        fixed_surcharge=_env_decimal("DELIVERY_FIXED_SURCHARGE", Decimal("5")),
        min_order_amount=_env_decimal("MIN_ORDER_AMOUNT", Decimal("0")),
        rates=_rates_from_env(),
        cost_share_bands=_bands_from_env(),
        routing_provider=provider,
        osrm_base_url=(os.getenv("OSRM_BASE_URL") or "https://router.project-osrm.org").strip().rstrip("/"),
        routing_timeout_ms=_env_int("ROUTING_TIMEOUT_MS", 3000, minimum=100, maximum=30000),
        routing_max_retries=_env_int("ROUTING_MAX_RETRIES", 1, minimum=0, maximum=2),
        haversine_avg_speed_kmh=_env_float("HAVERSINE_AVG_SPEED_KMH", 20.0, minimum=1.0, maximum=200.0),
        integrations_mode=mode,
        notify_queue_enabled=_env_bool("NOTIFY_QUEUE_ENABLED", False),
        code_expiry_sweep_seconds=_env_int("CODE_EXPIRY_SWEEP_SECONDS", 60, minimum=15, maximum=3600),
    )
