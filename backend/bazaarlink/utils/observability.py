from __future__ import annotations

import logging
import os
import time
import uuid

from flask import g, request

logger = logging.getLogger("bazaarlink.requests")

SECRET_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-payment-signature", "x-razorpay-signature"})
REDACTED = "[REDACTED]"


def get_request_id() -> str:
    return getattr(g, "request_id", "")


def _traces_sample_rate() -> float:
    try:
        rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0").strip())
    except ValueError:
        return 0.0
    return max(0.0, min(rate, 1.0))


def init_sentry(app) -> bool:
    """Turn on Sentry error reporting when SENTRY_DSN is set. Returns whether it is on."""
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return False
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("BAZAARLINK_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=_traces_sample_rate(),
            before_send=_before_send_scrub,
        )
    except Exception as exc:
        app.logger.warning("sentry_init_failed err=%s", exc)
        return False
    app.logger.info("sentry_enabled")
    return True


def _before_send_scrub(event, hint):
    req = event.get("request")
    if not isinstance(req, dict):
        return event
    headers = req.get("headers") or {}
    req["headers"] = {k: (REDACTED if str(k).lower() in SECRET_HEADERS else v) for k, v in headers.items()}
    # Bodies carry delivery codes and payment metadata.
    if "data" in req:
        req["data"] = REDACTED
    if req.get("query_string"):
        req["query_string"] = REDACTED
    return event


def _order_id() -> int | None:
    return (request.view_args or {}).get("order_id")


def install_request_observers(app) -> None:
    @app.before_request
    def _request_observer_begin():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _request_observer_end(response):
        rid = get_request_id() or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        elapsed_ms = (time.perf_counter() - started) * 1000.0 if started is not None else -1.0
        logger.info(
            "request_done method=%s path=%s status=%s ms=%.1f order_id=%s user_id=%s role=%s request_id=%s",
            request.method,
            request.path,
            int(response.status_code),
            elapsed_ms,
            _order_id(),
            getattr(g, "auth_user_id", None),
            getattr(g, "auth_role", None),
            rid,
        )
        return response
