from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from bazaarlink.extensions import db
from bazaarlink.models import DeliveryAgentProfile, User
from bazaarlink.services.agent_service import report_agent_location, upsert_agent_profile
from bazaarlink.services.order_lifecycle_service import list_available_orders

agents_bp = Blueprint("agents_bp", __name__, url_prefix="/api/agents")


def _current_agent():
    uid = getattr(g, "auth_user_id", None)
    if not uid:
        return None
    user = db.session.get(User, int(uid))
    if user is None or (user.role or "").strip().lower() != "delivery_agent":
        return None
    return user


def _denied():
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Delivery agent login required"}), 401


@agents_bp.get("/me")
def my_profile():
    user = _current_agent()
    if not user:
        return _denied()
    profile = DeliveryAgentProfile.query.filter_by(user_id=int(user.id)).first()
    return jsonify({"ok": True, "profile": profile.to_dict() if profile else None}), 200


@agents_bp.post("/me")
def save_profile():
    user = _current_agent()
    if not user:
        return _denied()
    payload = request.get_json(silent=True) or {}
    profile = upsert_agent_profile(
        int(user.id),
        full_name=payload.get("full_name"),
        phone=payload.get("phone"),
        alternate_phone=payload.get("alternate_phone"),
        vehicle_tier=payload.get("vehicle_tier"),
        vehicle_model=payload.get("vehicle_model"),
        vehicle_number=payload.get("vehicle_number"),
    )
    return jsonify({"ok": True, "profile": profile.to_dict()}), 200


@agents_bp.post("/me/location")
def report_location():
    user = _current_agent()
    if not user:
        return _denied()
    payload = request.get_json(silent=True) or {}
    location = payload.get("location") if "location" in payload else payload
    profile = report_agent_location(int(user.id), location)
    return jsonify({"ok": True, "profile": profile.to_dict()}), 200


@agents_bp.get("/me/available-orders")
def available_orders():
    user = _current_agent()
    if not user:
        return _denied()
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    rows = list_available_orders(int(user.id), limit=limit)
    items = []
    for order, km in rows:
        data = order.to_dict()
        data["pickup_distance_km"] = km
        items.append(data)
    return jsonify({"ok": True, "items": items}), 200
