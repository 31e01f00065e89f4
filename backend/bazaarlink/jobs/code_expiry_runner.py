from __future__ import annotations

import logging
from datetime import datetime

from bazaarlink.extensions import db
from bazaarlink.services.order_lifecycle_service import expire_stale_delivery_codes

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def run_code_expiry_sweep(*, now: datetime | None = None) -> dict:
    """Regress lapsed delivery codes back to picked_up.

    Verify already expires codes lazily; the sweep keeps list views honest
    for orders nobody touches after the code lapses.
    """
    started_at = _now()
    try:
        expired = expire_stale_delivery_codes(now=now)
    except Exception as exc:
        try:
            db.session.rollback()
        except Exception:
            pass
        logger.exception("code_expiry_sweep_failed")
        return {"ok": False, "expired": 0, "error": str(exc), "ts": started_at.isoformat()}
    duration_ms = max(0, int((_now() - started_at).total_seconds() * 1000))
    logger.info("code_expiry_sweep expired=%s duration_ms=%s", expired, duration_ms)
    return {"ok": True, "expired": int(expired), "ts": started_at.isoformat()}
