from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from bazaarlink.errors import InvalidRequest
from bazaarlink.extensions import db
from bazaarlink.models import User
from bazaarlink.services import order_lifecycle_service as lifecycle
from bazaarlink.services.pricing import quote_delivery

dispatch_bp = Blueprint("dispatch_bp", __name__, url_prefix="/api")


def _current_user():
    uid = getattr(g, "auth_user_id", None)
    if not uid:
        return None
    return db.session.get(User, int(uid))


def _role(user) -> str:
    return (getattr(user, "role", "") or "").strip().lower()


def _unauthorized():
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized"}), 401


def _forbidden(message: str = "Forbidden"):
    return jsonify({"ok": False, "error": "FORBIDDEN", "message": message}), 403


def _party_location(payload: dict, key: str, user_key: str):
    value = payload.get(key)
    if value is not None:
        return value
    ref = payload.get(user_key)
    if ref in (None, ""):
        return None
    try:
        user = db.session.get(User, int(ref))
    except (TypeError, ValueError):
        raise InvalidRequest(f"{user_key} must be a user id")
    return user.location() if user is not None else None


@dispatch_bp.post("/delivery/quote")
def delivery_quote():
    user = _current_user()
    if not user:
        return _unauthorized()
    payload = request.get_json(silent=True) or {}
    origin = _party_location(payload, "origin", "wholesaler_id")
    # Retailers quote to their own shop by default.
    destination = _party_location(payload, "destination", "retailer_id") or user.location()
    result = quote_delivery(payload.get("order_amount"), payload.get("vehicle_tier"), origin, destination)
    return jsonify({"ok": True, "quote": result.to_dict()}), 200


@dispatch_bp.post("/orders/<int:order_id>/accept")
def accept_order(order_id: int):
    user = _current_user()
    if not user:
        return _unauthorized()
    if _role(user) != "delivery_agent":
        return _forbidden("Only delivery agents can accept orders")
    order = lifecycle.accept_order(order_id, int(user.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@dispatch_bp.post("/orders/<int:order_id>/pickup")
def pickup_order(order_id: int):
    user = _current_user()
    if not user:
        return _unauthorized()
    if _role(user) != "delivery_agent":
        return _forbidden("Only delivery agents can pick up orders")
    order = lifecycle.pickup_order(order_id, int(user.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@dispatch_bp.post("/orders/<int:order_id>/delivery-code")
def generate_delivery_code(order_id: int):
    user = _current_user()
    if not user:
        return _unauthorized()
    if _role(user) != "delivery_agent":
        return _forbidden("Only the delivery agent can request a delivery code")
    # The code itself goes to the retailer only.
    order, _code = lifecycle.generate_delivery_code(order_id, int(user.id))
    return jsonify({"ok": True, "order": order.to_dict(), "code_sent": True}), 200


@dispatch_bp.post("/orders/<int:order_id>/delivery-code/verify")
def verify_delivery_code(order_id: int):
    user = _current_user()
    if not user:
        return _unauthorized()
    if _role(user) != "delivery_agent":
        return _forbidden("Only the delivery agent can confirm delivery")
    payload = request.get_json(silent=True) or {}
    order = lifecycle.verify_delivery_code(order_id, payload.get("code"), int(user.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@dispatch_bp.get("/orders/active")
def active_orders():
    user = _current_user()
    if not user:
        return _unauthorized()
    role = (request.args.get("role") or _role(user)).strip().lower()
    key = (request.args.get("key") or str(user.id)).strip()
    if _role(user) != "admin" and (role != _role(user) or key != str(user.id)):
        return _forbidden("You can only list your own orders")
    rows = lifecycle.list_active_orders(role, key)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]}), 200


@dispatch_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    user = _current_user()
    if not user:
        return _unauthorized()
    order = lifecycle.get_order(order_id)
    parties = {order.wholesaler_id, order.retailer_id, order.delivery_agent_id}
    if _role(user) != "admin" and int(user.id) not in parties:
        current_app.logger.info("order_view_denied order_id=%s user_id=%s", order_id, user.id)
        return _forbidden()
    return jsonify({"ok": True, "order": order.to_dict(include_history=True)}), 200
