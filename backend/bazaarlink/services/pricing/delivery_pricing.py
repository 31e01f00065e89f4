from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_CEILING
from typing import Any

from bazaarlink.errors import InvalidAmount, InvalidLocation, InvalidVehicleTier
from bazaarlink.services.geo import distance_and_time
from bazaarlink.utils.dispatch_settings import VEHICLE_TIERS, DispatchSettings, get_dispatch_settings

_TIER_ALIASES = {
    "2_wheeler": "two_wheeler",
    "bike": "two_wheeler",
    "3_wheeler": "three_wheeler",
    "auto": "three_wheeler",
    "4_wheeler": "four_wheeler",
}


@dataclass(frozen=True)
class DeliveryQuote:
    total_delivery: int
    retailer_pays: int
    wholesaler_pays: int
    retailer_percent: int
    distance_km: float
    duration_minutes: float

    def to_dict(self) -> dict:
        return {
            "total_delivery": int(self.total_delivery),
            "retailer_pays": int(self.retailer_pays),
            "wholesaler_pays": int(self.wholesaler_pays),
            "retailer_percent": int(self.retailer_percent),
            "distance_km": float(self.distance_km),
            "duration_minutes": float(self.duration_minutes),
        }


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not out.is_finite():
        return None
    return out


def _ceil_unit(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_CEILING))


def normalize_vehicle_tier(value: Any) -> str:
    raw = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    tier = _TIER_ALIASES.get(raw, raw)
    if tier not in VEHICLE_TIERS:
        raise InvalidVehicleTier(f"Unknown vehicle tier '{value}'", allowed=list(VEHICLE_TIERS))
    return tier


def retailer_percent_for(amount: Decimal, settings: DispatchSettings) -> int:
    for upper, pct in settings.cost_share_bands:
        if upper is None or amount <= upper:
            return int(pct)
    return 0


def split_delivery(total: int, retailer_percent: int) -> tuple[int, int]:
    retailer = _ceil_unit(Decimal(int(total)) * Decimal(int(retailer_percent)) / Decimal(100))
    retailer = max(0, min(retailer, int(total)))
    return retailer, int(total) - retailer


def quote(
    order_amount: Any,
    vehicle_tier: Any,
    distance_km: Any,
    duration_minutes: Any,
    *,
    settings: DispatchSettings | None = None,
) -> DeliveryQuote:
    cfg = settings or get_dispatch_settings()
    amount = _to_decimal(order_amount)
    if amount is None or amount <= 0:
        raise InvalidAmount("Order amount must be greater than zero")
    if amount < cfg.min_order_amount:
        raise InvalidAmount(f"Order amount must be at least {cfg.min_order_amount}", minimum=str(cfg.min_order_amount))

    tier = normalize_vehicle_tier(vehicle_tier)
    km = _to_decimal(distance_km)
    minutes = _to_decimal(duration_minutes)
    if km is None or minutes is None or km < 0 or minutes < 0:
        raise InvalidLocation("Distance and travel time must be non-negative numbers")

    per_km, per_min = cfg.rates.get(tier, (Decimal("0"), Decimal("0")))
    base = Decimal(2) * km * Decimal(per_km) + Decimal(2) * minutes * Decimal(per_min) + Decimal(cfg.fixed_surcharge)
    total = _ceil_unit(base)
    pct = retailer_percent_for(amount, cfg)
    retailer_pays, wholesaler_pays = split_delivery(total, pct)
    return DeliveryQuote(
        total_delivery=total,
        retailer_pays=retailer_pays,
        wholesaler_pays=wholesaler_pays,
        retailer_percent=pct,
        distance_km=float(km),
        duration_minutes=float(minutes),
    )


def quote_delivery(
    order_amount: Any,
    vehicle_tier: Any,
    origin: Any,
    destination: Any,
    *,
    settings: DispatchSettings | None = None,
) -> DeliveryQuote:
    cfg = settings or get_dispatch_settings()
    # Validate cheap inputs before spending a routing call.
    quote(order_amount, vehicle_tier, 0, 0, settings=cfg)
    km, minutes = distance_and_time(origin, destination, settings=cfg)
    return quote(order_amount, vehicle_tier, km, minutes, settings=cfg)
