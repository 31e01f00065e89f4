from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from bazaarlink.extensions import db
from bazaarlink.models import Notification, User
from bazaarlink.services.notification_dispatch import register_push_token

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


def _current_user():
    uid = getattr(g, "auth_user_id", None)
    if not uid:
        return None
    return db.session.get(User, int(uid))


@notifications_bp.get("/notifications")
def list_notifications():
    user = _current_user()
    if not user:
        return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized"}), 401
    rows = (
        Notification.query.filter_by(user_id=int(user.id))
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(80)
        .all()
    )
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/token")
def save_token():
    user = _current_user()
    if not user:
        return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized"}), 401
    payload = request.get_json(silent=True) or {}
    token = str(payload.get("token") or payload.get("fcm_token") or "").strip()
    if not token:
        return jsonify({"ok": False, "error": "INVALID_REQUEST", "message": "token is required"}), 400
    register_push_token(int(user.id), token)
    return jsonify({"ok": True}), 200
