from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable

from flask import current_app
from sqlalchemy import exists, func, select, update

from bazaarlink.errors import (
    AgentNotAssigned,
    AgentProfileMissing,
    CodeExpired,
    InvalidLocation,
    InvalidRequest,
    InvalidState,
    OrderNotFound,
    OutOfRange,
    RouteUnavailable,
    WrongCode,
)
from bazaarlink.extensions import db
from bazaarlink.models import DeliveryAgentProfile, Order, OrderStatus, OrderStatusEntry
from bazaarlink.services import notification_dispatch
from bazaarlink.services.dispatch import assert_within_radius
from bazaarlink.services.geo import haversine_km
from bazaarlink.utils.dispatch_settings import DispatchSettings, get_dispatch_settings

logger = logging.getLogger(__name__)

PARTY_ROLES = ("wholesaler", "retailer", "delivery_agent")


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _party_column(role: str):
    return {
        "wholesaler": Order.wholesaler_id,
        "retailer": Order.retailer_id,
        "delivery_agent": Order.delivery_agent_id,
    }.get(role)


def get_order(order_id) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise OrderNotFound(f"Order {order_id} not found")
    order = db.session.get(Order, oid)
    if order is None:
        raise OrderNotFound(f"Order {oid} not found")
    return order


def _require_status(order: Order, allowed: Iterable[str], target: str) -> None:
    if order.status not in set(allowed):
        raise InvalidState(
            f"Order #{int(order.id)} is {order.status}, cannot move to {target}",
            current_status=order.status,
            requested=target,
        )


def _require_agent(agent_id) -> DeliveryAgentProfile:
    try:
        uid = int(agent_id)
    except (TypeError, ValueError):
        raise AgentProfileMissing("Delivery agent id is invalid")
    profile = DeliveryAgentProfile.query.filter_by(user_id=uid).first()
    if profile is None:
        raise AgentProfileMissing(f"No delivery profile for agent {uid}")
    if profile.live_location() is None:
        raise AgentProfileMissing("Share your live location before taking orders", agent_id=uid)
    return profile


def _agent_values(profile: DeliveryAgentProfile) -> dict:
    return {
        "delivery_agent_id": int(profile.user_id),
        "delivery_agent_name": (profile.full_name or "")[:120],
        "delivery_agent_phone": (profile.phone or "")[:32],
    }


def _check_radius(order: Order, profile: DeliveryAgentProfile, settings: DispatchSettings) -> float:
    origin = order.origin()
    if origin is None:
        raise InvalidLocation(f"Order #{int(order.id)} has no pickup location")
    return assert_within_radius(origin, profile.live_location(), settings=settings)


def _history_stamp(order_id: int, now: datetime | None) -> datetime:
    stamp = now or _now()
    last = db.session.execute(
        select(func.max(OrderStatusEntry.created_at)).where(OrderStatusEntry.order_id == int(order_id))
    ).scalar()
    if last is not None and last > stamp:
        return last
    return stamp


def append_history(order_id: int, statuses: Iterable[str], *, stamp: datetime, actor_id: int | None = None) -> None:
    """Stage history rows; the caller commits them with its status write."""
    seq = db.session.execute(
        select(func.coalesce(func.max(OrderStatusEntry.seq), 0)).where(OrderStatusEntry.order_id == int(order_id))
    ).scalar()
    for status in statuses:
        seq = int(seq or 0) + 1
        db.session.add(
            OrderStatusEntry(
                order_id=int(order_id),
                seq=seq,
                status=status,
                actor_id=int(actor_id) if actor_id is not None else None,
                created_at=stamp,
            )
        )


def _transition(
    order: Order,
    *,
    expected: Iterable[str],
    target: str,
    values: dict | None = None,
    now: datetime | None = None,
    actor_id: int | None = None,
    markers: tuple[str, ...] = (),
) -> Order:
    """Compare-and-set the order status and append history in one transaction."""
    order_id = int(order.id)
    loaded_version = int(order.version or 1)
    from_status = order.status
    allowed = sorted(set(expected))
    for status in allowed:
        if not OrderStatus.can_transition(status, target):
            raise InvalidState(f"invalid_order_transition {status}->{target}")

    stamp = _history_stamp(order_id, now)
    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(allowed), Order.version == loaded_version)
        .values(status=target, version=Order.version + 1, updated_at=stamp, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.session.rollback()
        current = db.session.execute(select(Order.status).where(Order.id == order_id)).scalar()
        logger.info(
            "order_transition_conflict order_id=%s expected=%s target=%s current=%s",
            order_id, ",".join(allowed), target, current,
        )
        raise InvalidState(
            f"Order #{order_id} changed concurrently and is now {current}",
            current_status=current,
            requested=target,
        )

    append_history(order_id, (*markers, target), stamp=stamp, actor_id=actor_id)
    db.session.commit()
    logger.info(
        "order_transition order_id=%s from=%s to=%s version=%s actor_id=%s",
        order_id, from_status, target, loaded_version + 1, actor_id,
    )
    return db.session.get(Order, order_id, populate_existing=True)


def _hash_code(order_id: int, code: str) -> str:
    secret = str(current_app.config.get("SECRET_KEY") or "dev-secret").encode("utf-8")
    raw = f"{int(order_id)}:delivery:{code}".encode("utf-8")
    return hmac.new(secret, raw, hashlib.sha256).hexdigest()


def _new_code(length: int) -> str:
    width = max(4, min(int(length), 8))
    return f"{secrets.randbelow(10 ** width):0{width}d}"


def _notify(order: Order, recipients: Iterable[int | None], title: str, body: str) -> None:
    data = {"order_id": str(int(order.id)), "status": order.status}
    notification_dispatch.notify_many([r for r in recipients if r is not None], title, body, data)


def accept_order(order_id, agent_id, *, now: datetime | None = None, settings: DispatchSettings | None = None) -> Order:
    cfg = settings or get_dispatch_settings()
    order = get_order(order_id)
    _require_status(order, {OrderStatus.PAID}, OrderStatus.DELIVERY_ACCEPTED)
    profile = _require_agent(agent_id)
    _check_radius(order, profile, cfg)

    updated = _transition(
        order,
        expected={OrderStatus.PAID},
        target=OrderStatus.DELIVERY_ACCEPTED,
        values=_agent_values(profile),
        now=now,
        actor_id=int(profile.user_id),
    )
    _notify(
        updated,
        [updated.retailer_id, updated.wholesaler_id],
        "Delivery partner assigned",
        f"{updated.delivery_agent_name} ({updated.delivery_agent_phone}) accepted order #{int(updated.id)}",
    )
    return updated


def pickup_order(order_id, agent_id, *, now: datetime | None = None, settings: DispatchSettings | None = None) -> Order:
    cfg = settings or get_dispatch_settings()
    order = get_order(order_id)
    _require_status(order, {OrderStatus.PAID, OrderStatus.DELIVERY_ACCEPTED}, OrderStatus.PICKED_UP)
    profile = _require_agent(agent_id)
    if order.status == OrderStatus.DELIVERY_ACCEPTED:
        if int(order.delivery_agent_id or 0) != int(profile.user_id):
            raise InvalidState(
                f"Order #{int(order.id)} was accepted by another delivery agent",
                current_status=order.status,
                requested=OrderStatus.PICKED_UP,
            )
    else:
        # Direct claim from paid goes through the same radius gate as accept.
        _check_radius(order, profile, cfg)

    updated = _transition(
        order,
        expected={order.status},
        target=OrderStatus.PICKED_UP,
        values=_agent_values(profile),
        now=now,
        actor_id=int(profile.user_id),
    )
    _notify(
        updated,
        [updated.retailer_id, updated.wholesaler_id],
        "Order picked up",
        f"Order #{int(updated.id)} ({updated.product_name}) is on the way",
    )
    return updated


def generate_delivery_code(
    order_id,
    agent_id=None,
    *,
    now: datetime | None = None,
    settings: DispatchSettings | None = None,
) -> tuple[Order, str]:
    """Issue (or rotate) the handoff code and text it to the retailer.

    The plain code is returned once for the caller's delivery channel and is
    never persisted; only its keyed digest is stored.
    """
    cfg = settings or get_dispatch_settings()
    order = get_order(order_id)
    _require_status(
        order,
        {OrderStatus.PICKED_UP, OrderStatus.DELIVERY_CODE_GENERATED},
        OrderStatus.DELIVERY_CODE_GENERATED,
    )
    if order.delivery_agent_id is None:
        raise AgentNotAssigned(f"Order #{int(order.id)} has no delivery agent")
    if agent_id is not None and int(agent_id) != int(order.delivery_agent_id):
        raise AgentNotAssigned(f"Order #{int(order.id)} is assigned to another delivery agent")

    code = _new_code(cfg.delivery_code_length)
    stamp = _history_stamp(int(order.id), now)
    updated = _transition(
        order,
        expected={order.status},
        target=OrderStatus.DELIVERY_CODE_GENERATED,
        values={"delivery_code_hash": _hash_code(int(order.id), code), "delivery_code_issued_at": stamp},
        now=stamp,
        actor_id=int(order.delivery_agent_id),
    )

    notification_dispatch.send_sms(
        updated.retailer_phone,
        _code_sms(updated, code, cfg),
        stored_text=_code_sms(updated, "*" * len(code), cfg),
        reference=f"order:{int(updated.id)}:delivery_code:v{int(updated.version)}",
        recipient_id=updated.retailer_id,
    )
    _notify(
        updated,
        [updated.retailer_id],
        "Delivery partner has arrived",
        f"{updated.delivery_agent_name} is at your shop with order #{int(updated.id)}. Check SMS for the delivery code.",
    )
    return updated, code


def _code_sms(order: Order, code: str, settings: DispatchSettings) -> str:
    return (
        f"BazaarLink: Delivery code for order #{int(order.id)} is {code}. "
        f"Share it only with {order.delivery_agent_name} ({order.delivery_agent_phone}) at handoff. "
        f"Valid for {settings.delivery_code_ttl_minutes} minutes."
    )


def _expire_code(order: Order, now: datetime | None) -> Order:
    return _transition(
        order,
        expected={OrderStatus.DELIVERY_CODE_GENERATED},
        target=OrderStatus.PICKED_UP,
        values={"delivery_code_hash": None, "delivery_code_issued_at": None},
        now=now,
        markers=(OrderStatus.CODE_EXPIRED,),
    )


def _code_expired(order: Order, now: datetime, settings: DispatchSettings) -> bool:
    issued = order.delivery_code_issued_at
    if issued is None:
        return True
    return now - issued > timedelta(minutes=int(settings.delivery_code_ttl_minutes))


def verify_delivery_code(
    order_id,
    code,
    agent_id=None,
    *,
    now: datetime | None = None,
    settings: DispatchSettings | None = None,
) -> Order:
    cfg = settings or get_dispatch_settings()
    order = get_order(order_id)
    _require_status(order, {OrderStatus.DELIVERY_CODE_GENERATED}, OrderStatus.DELIVERED)
    if agent_id is not None and int(agent_id) != int(order.delivery_agent_id or 0):
        raise AgentNotAssigned(f"Order #{int(order.id)} is assigned to another delivery agent")

    checked_at = now or _now()
    if _code_expired(order, checked_at, cfg):
        regressed = _expire_code(order, checked_at)
        logger.info("delivery_code_expired order_id=%s", int(regressed.id))
        raise CodeExpired(
            f"Delivery code for order #{int(regressed.id)} expired, generate a new one",
            status=regressed.status,
        )

    supplied = code if isinstance(code, str) else None
    if supplied is None or not hmac.compare_digest(_hash_code(int(order.id), supplied), order.delivery_code_hash or ""):
        logger.info("delivery_code_mismatch order_id=%s", int(order.id))
        raise WrongCode()

    updated = _transition(
        order,
        expected={OrderStatus.DELIVERY_CODE_GENERATED},
        target=OrderStatus.DELIVERED,
        values={"delivery_code_hash": None, "delivery_code_issued_at": None},
        now=checked_at,
        actor_id=order.delivery_agent_id,
    )
    _notify(
        updated,
        [updated.retailer_id, updated.wholesaler_id],
        "Order delivered",
        f"Order #{int(updated.id)} ({updated.product_name}) was delivered",
    )
    return updated


def list_active_orders(
    party_role: str,
    party_key,
    *,
    now: datetime | None = None,
    settings: DispatchSettings | None = None,
) -> list[Order]:
    """Orders for one party, hiding deliveries older than the grace window."""
    cfg = settings or get_dispatch_settings()
    role = (party_role or "").strip().lower()
    column = _party_column(role)
    if column is None:
        raise InvalidRequest(f"role must be one of {', '.join(PARTY_ROLES)}")
    try:
        key = int(party_key)
    except (TypeError, ValueError):
        raise InvalidRequest("party key must be a user id")

    cutoff = (now or _now()) - timedelta(minutes=int(cfg.delivered_visible_minutes))
    delivered_before_cutoff = exists().where(
        OrderStatusEntry.order_id == Order.id,
        OrderStatusEntry.status == OrderStatus.DELIVERED,
        OrderStatusEntry.created_at < cutoff,
    )
    return (
        Order.query.filter(column == key, ~delivered_before_cutoff)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def list_available_orders(agent_id, *, limit: int = 100, settings: DispatchSettings | None = None) -> list[tuple[Order, float]]:
    """Unassigned paid orders whose pickup point is within the agent's radius."""
    cfg = settings or get_dispatch_settings()
    profile = _require_agent(agent_id)
    candidates = (
        Order.query.filter(Order.status == OrderStatus.PAID, Order.delivery_agent_id.is_(None))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )
    agent_at = profile.live_location()
    out: list[tuple[Order, float]] = []
    for order in candidates:
        origin = order.origin()
        if origin is None:
            continue
        if cfg.routing_provider == "osrm" and haversine_km(origin, agent_at) > cfg.match_radius_km:
            continue
        try:
            km = assert_within_radius(origin, agent_at, settings=cfg)
        except (OutOfRange, InvalidLocation):
            continue
        except RouteUnavailable as exc:
            logger.warning("available_orders_route_unavailable order_id=%s err=%s", int(order.id), exc.message)
            continue
        out.append((order, round(km, 3)))
    out.sort(key=lambda pair: pair[1])
    return out


def expire_stale_delivery_codes(*, now: datetime | None = None, settings: DispatchSettings | None = None) -> int:
    """Regress every lapsed code back to picked_up. Returns the number regressed."""
    cfg = settings or get_dispatch_settings()
    checked_at = now or _now()
    cutoff = checked_at - timedelta(minutes=int(cfg.delivery_code_ttl_minutes))
    stale = (
        Order.query.filter(
            Order.status == OrderStatus.DELIVERY_CODE_GENERATED,
            Order.delivery_code_issued_at < cutoff,
        )
        .order_by(Order.id.asc())
        .all()
    )
    expired = 0
    for order in stale:
        try:
            _expire_code(order, checked_at)
            expired += 1
        except InvalidState:
            # Verified or rotated by a concurrent request.
            continue
    if expired:
        logger.info("delivery_code_sweep expired=%s", expired)
    return expired
