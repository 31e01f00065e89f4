from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import IntegrityError

from bazaarlink.errors import (
    DispatchError,
    DuplicatePayment,
    IncompleteOrderData,
    InvalidLocation,
    InvalidVehicleTier,
    OperationResult,
)
from bazaarlink.extensions import db
from bazaarlink.models import (
    DeliveryAgentProfile,
    Order,
    OrderStatus,
    OrderStatusEntry,
    PartySnapshot,
    PaymentEvent,
    User,
)
from bazaarlink.services import notification_dispatch
from bazaarlink.services.dispatch import eligible_agents
from bazaarlink.services.geo import coerce_coordinate
from bazaarlink.services.pricing import normalize_vehicle_tier
from bazaarlink.utils.dispatch_settings import DispatchSettings, get_dispatch_settings

logger = logging.getLogger(__name__)

KINDS = ("single", "cart")
# Matches the payment_events.payment_id and orders.external_payment_id columns.
MAX_PAYMENT_ID_LENGTH = 128


@dataclass
class IntakeResult:
    orders: list[Order] = field(default_factory=list)
    duplicate: bool = False

    @property
    def cart_group_id(self) -> str | None:
        for order in self.orders:
            if order.cart_group_id:
                return order.cart_group_id
        return None

    def to_result(self) -> OperationResult:
        data = {
            "order_ids": [int(o.id) for o in self.orders],
            "cart_group_id": self.cart_group_id,
            "duplicate": bool(self.duplicate),
        }
        if self.duplicate:
            return OperationResult(ok=True, code=DuplicatePayment.code, message=DuplicatePayment.default_message, data=data)
        return OperationResult(ok=True, message="orders_created", data=data)


def _payload_hash(metadata: Any) -> str:
    try:
        raw = json.dumps(metadata, sort_keys=True, separators=(",", ":"), default=str)
    except Exception:
        raw = str(metadata)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _existing_orders(payment_id: str) -> list[Order]:
    return Order.query.filter_by(external_payment_id=payment_id).order_by(Order.id.asc()).all()


def _decimal(value: Any, label: str) -> Decimal:
    if value is None or isinstance(value, bool) or value == "":
        raise IncompleteOrderData(f"{label} is required", field=label)
    try:
        out = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise IncompleteOrderData(f"{label} must be a number", field=label)
    if not out.is_finite():
        raise IncompleteOrderData(f"{label} must be a number", field=label)
    return out


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _user_id(value: Any, label: str) -> int:
    if value is None or isinstance(value, bool) or str(value).strip() == "":
        raise IncompleteOrderData(f"{label} is required", field=label)
    try:
        return int(str(value).strip())
    except ValueError:
        raise IncompleteOrderData(f"{label} must be a user id", field=label)


def _party(user_id: int, role: str, captured_location: Any) -> PartySnapshot:
    user = db.session.get(User, int(user_id))
    if user is None or (user.role or "") != role:
        raise IncompleteOrderData(f"Unknown {role} {user_id}", field=f"{role}_id")
    if captured_location is not None:
        try:
            point = coerce_coordinate(captured_location, label=f"{role} location")
        except InvalidLocation as exc:
            raise IncompleteOrderData(exc.message, field=f"{role}_location")
        lat, lng = point.lat, point.lng
    else:
        account = user.location()
        lat, lng = (account[0], account[1]) if account else (None, None)
    return PartySnapshot(
        user_id=int(user.id),
        name=(user.shop_name or user.name or "")[:160],
        phone=(user.phone or "")[:32],
        lat=lat,
        lng=lng,
    )


def _pricing(meta: dict) -> dict:
    raw = meta.get("pricing")
    if not isinstance(raw, dict):
        raise IncompleteOrderData("pricing breakdown is required", field="pricing")
    total = _decimal(raw.get("total_delivery"), "pricing.total_delivery")
    retailer = _decimal(raw.get("retailer_pays"), "pricing.retailer_pays")
    wholesaler = _decimal(raw.get("wholesaler_pays"), "pricing.wholesaler_pays")
    if total < 0 or retailer < 0 or wholesaler < 0:
        raise IncompleteOrderData("delivery charges cannot be negative", field="pricing")
    if retailer + wholesaler != total:
        raise IncompleteOrderData("delivery shares must add up to the delivery total", field="pricing")
    try:
        percent = int(raw.get("retailer_percent") or 0)
    except (TypeError, ValueError):
        raise IncompleteOrderData("pricing.retailer_percent must be an integer", field="pricing.retailer_percent")
    if percent < 0 or percent > 100:
        raise IncompleteOrderData("pricing.retailer_percent must be 0..100", field="pricing.retailer_percent")
    return {
        "delivery_total": total,
        "retailer_delivery_pay": retailer,
        "wholesaler_delivery_pay": wholesaler,
        "retailer_percent": percent,
        "distance_km": _optional_float(raw.get("distance_km")),
        "duration_minutes": _optional_float(raw.get("duration_minutes")),
    }


def _lines(meta: dict, kind: str) -> list[dict]:
    if kind == "cart":
        items = meta.get("items")
        if not isinstance(items, list) or not items:
            raise IncompleteOrderData("cart has no items", field="items")
    else:
        items = [meta]

    lines = []
    for idx, item in enumerate(items):
        label = f"items[{idx}]" if kind == "cart" else "metadata"
        if not isinstance(item, dict):
            raise IncompleteOrderData(f"{label} must be an object", field=label)
        product_id = str(item.get("product_id") or "").strip()
        if not product_id:
            raise IncompleteOrderData(f"{label}.product_id is required", field=f"{label}.product_id")
        price = _decimal(item.get("price"), f"{label}.price")
        if price <= 0:
            raise IncompleteOrderData(f"{label}.price must be greater than zero", field=f"{label}.price")
        try:
            quantity = int(item.get("quantity") or 1)
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            raise IncompleteOrderData(f"{label}.quantity must be at least 1", field=f"{label}.quantity")
        lines.append(
            {
                "product_id": product_id[:64],
                "product_name": str(item.get("product_name") or "").strip()[:200],
                "product_image": (str(item.get("product_image") or "").strip() or None),
                "quantity": quantity,
                "price": price,
                "wholesaler_id": _user_id(item.get("wholesaler_id") or meta.get("wholesaler_id"), f"{label}.wholesaler_id"),
            }
        )
    return lines


def on_payment_confirmed(
    payment_id: Any,
    metadata: Any,
    *,
    provider: str = "gateway",
    now: datetime | None = None,
    settings: DispatchSettings | None = None,
) -> IntakeResult:
    """Turn a confirmed payment into paid order(s). Safe to call again with the same id."""
    pid = str(payment_id or "").strip()
    if not pid:
        raise IncompleteOrderData("payment id is required", field="payment_id")
    if len(pid) > MAX_PAYMENT_ID_LENGTH:
        raise IncompleteOrderData(
            f"payment id longer than {MAX_PAYMENT_ID_LENGTH} characters", field="payment_id"
        )
    payload_hash = _payload_hash(metadata)

    existing = _existing_orders(pid)
    seen = PaymentEvent.query.filter_by(payment_id=pid).first()
    if existing or seen is not None:
        if seen is not None and seen.payload_hash and seen.payload_hash != payload_hash:
            logger.warning("payment_replay_payload_mismatch payment_id=%s", pid)
        logger.info("payment_duplicate payment_id=%s orders=%s", pid, len(existing))
        return IntakeResult(orders=existing, duplicate=True)

    if not isinstance(metadata, dict):
        raise IncompleteOrderData("payment metadata is missing", field="metadata")
    kind = str(metadata.get("kind") or "single").strip().lower()
    if kind not in KINDS:
        raise IncompleteOrderData(f"unknown payment kind '{kind}'", field="kind")

    retailer = _party(_user_id(metadata.get("retailer_id"), "retailer_id"), "retailer", metadata.get("retailer_location"))
    try:
        tier = normalize_vehicle_tier(metadata.get("vehicle_tier"))
    except InvalidVehicleTier as exc:
        raise IncompleteOrderData(exc.message, field="vehicle_tier")
    pricing = _pricing(metadata)
    lines = _lines(metadata, kind)

    top_wholesaler = metadata.get("wholesaler_id")
    wholesalers: dict[int, PartySnapshot] = {}
    for line in lines:
        wid = line["wholesaler_id"]
        if wid not in wholesalers:
            # Checkout captured the pickup point of the top-level wholesaler only.
            captured = metadata.get("wholesaler_location") if str(wid) == str(top_wholesaler) else None
            wholesalers[wid] = _party(wid, "wholesaler", captured)

    stamp = now or datetime.utcnow()
    cart_group_id = uuid.uuid4().hex if kind == "cart" else None
    orders: list[Order] = []
    try:
        db.session.add(
            PaymentEvent(
                provider=(provider or "gateway")[:32],
                payment_id=pid,
                kind=kind,
                status="processed",
                cart_group_id=cart_group_id,
                order_count=len(lines),
                payload_hash=payload_hash,
                created_at=stamp,
            )
        )
        for line in lines:
            order = Order(
                external_payment_id=pid,
                cart_group_id=cart_group_id,
                product_id=line["product_id"],
                product_name=line["product_name"],
                product_image=line["product_image"],
                quantity=line["quantity"],
                vehicle_tier=tier,
                price=line["price"],
                delivery_total=pricing["delivery_total"],
                retailer_delivery_pay=pricing["retailer_delivery_pay"],
                wholesaler_delivery_pay=pricing["wholesaler_delivery_pay"],
                retailer_percent=pricing["retailer_percent"],
                total_amount=line["price"] + pricing["retailer_delivery_pay"],
                distance_km=pricing["distance_km"],
                duration_minutes=pricing["duration_minutes"],
                status=OrderStatus.PAID,
                version=1,
                created_at=stamp,
                updated_at=stamp,
            )
            order.apply_party_snapshots(wholesaler=wholesalers[line["wholesaler_id"]], retailer=retailer)
            db.session.add(order)
            orders.append(order)
        db.session.flush()
        for order in orders:
            db.session.add(OrderStatusEntry(order_id=int(order.id), seq=1, status=OrderStatus.PAID, created_at=stamp))
        db.session.commit()
    except IntegrityError:
        # Lost a race against a concurrent delivery of the same payment.
        db.session.rollback()
        logger.info("payment_duplicate_race payment_id=%s", pid)
        return IntakeResult(orders=_existing_orders(pid), duplicate=True)

    logger.info(
        "payment_orders_created payment_id=%s kind=%s orders=%s cart_group_id=%s",
        pid, kind, len(orders), cart_group_id,
    )
    _announce(orders, settings=settings)
    return IntakeResult(orders=orders, duplicate=False)


def _announce(orders: list[Order], *, settings: DispatchSettings | None = None) -> None:
    cfg = settings or get_dispatch_settings()
    if not orders:
        return
    by_wholesaler: dict[int, list[Order]] = {}
    for order in orders:
        by_wholesaler.setdefault(int(order.wholesaler_id), []).append(order)

    for wholesaler_id, group in by_wholesaler.items():
        first = group[0]
        names = ", ".join(o.product_name or o.product_id for o in group)
        notification_dispatch.notify(
            wholesaler_id,
            "New order received",
            f"{first.retailer_name} paid for {names}",
            {"order_id": str(int(first.id)), "status": OrderStatus.PAID},
            settings=cfg,
        )

        origin = first.origin()
        if origin is None:
            continue
        profiles = DeliveryAgentProfile.query.filter(
            DeliveryAgentProfile.live_lat.isnot(None),
            DeliveryAgentProfile.live_lng.isnot(None),
        ).all()
        try:
            matches = eligible_agents(origin, profiles, settings=cfg)
        except DispatchError as exc:
            logger.warning("new_order_fanout_failed order_id=%s err=%s", int(first.id), exc.message)
            continue
        notification_dispatch.notify_many(
            [m.agent_id for m in matches],
            "New order available",
            f"Pickup from {first.wholesaler_name} for {first.retailer_name}",
            {"order_id": str(int(first.id)), "status": OrderStatus.PAID},
            settings=cfg,
        )
