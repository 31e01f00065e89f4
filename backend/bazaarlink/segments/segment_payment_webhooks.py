from __future__ import annotations

import hashlib
import hmac
import json
import os

from flask import Blueprint, current_app, jsonify, request

from bazaarlink.errors import IncompleteOrderData
from bazaarlink.services.payment_intake_service import on_payment_confirmed
from bazaarlink.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _signature_ok(raw: bytes) -> bool:
    secret = (os.getenv("PAYMENT_WEBHOOK_SECRET") or "").strip()
    if not secret:
        return True
    sig = (request.headers.get("X-Payment-Signature") or request.headers.get("X-Razorpay-Signature") or "").strip()
    if not sig:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, sig.lower())


def _razorpay_event(payload: dict):
    """(payment_id, metadata) from a payment.captured envelope, or None for other events."""
    if (payload.get("event") or "") != "payment.captured":
        return None
    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    notes = entity.get("notes") or {}
    metadata = notes.get("metadata") if isinstance(notes, dict) else None
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            raise IncompleteOrderData("notes.metadata is not valid JSON", field="metadata")
    return entity.get("id"), metadata


@webhooks_bp.post("/payments")
def payment_confirmed():
    raw = request.get_data() or b""
    if not _signature_ok(raw):
        current_app.logger.warning("payment_webhook_bad_signature trace_id=%s", get_request_id())
        return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "message": "Signature mismatch"}), 401

    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise IncompleteOrderData("webhook body must be a JSON object")

    if "event" in payload:
        parsed = _razorpay_event(payload)
        if parsed is None:
            return jsonify({"ok": True, "ignored": True, "event": str(payload.get("event") or "")}), 200
        payment_id, metadata = parsed
        provider = "razorpay"
    else:
        payment_id = payload.get("payment_id")
        metadata = payload.get("metadata")
        provider = str(payload.get("provider") or "gateway")

    result = on_payment_confirmed(payment_id, metadata, provider=provider)
    body = result.to_result().to_dict()
    body["trace_id"] = get_request_id()
    return jsonify(body), 200
