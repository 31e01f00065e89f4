from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from bazaarlink.extensions import db
from bazaarlink.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from bazaarlink.integrations.messaging.factory import build_messaging_provider
from bazaarlink.integrations.push.factory import build_push_provider
from bazaarlink.models import Notification, User
from bazaarlink.utils.dispatch_settings import DispatchSettings, get_dispatch_settings

logger = logging.getLogger(__name__)

RETRYABLE_CODES = {"PUSH_PROVIDER_DOWN", "SMS_PROVIDER_DOWN", "SMS_RATE_LIMITED"}


def _safe_rollback() -> None:
    try:
        db.session.rollback()
    except Exception:
        pass


def _finish(row: Notification, *, status: str, provider: str = "", provider_ref: str = "", error: str = "") -> None:
    row.status = status
    row.provider = (provider or "")[:64] or None
    row.provider_ref = (provider_ref or "")[:160] or None
    row.error = (error or "")[:240] or None
    if status == "sent":
        row.sent_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def deliver_push(notification_id: int, *, settings: DispatchSettings | None = None) -> str:
    """Send a queued push row. Returns the provider result code ("OK" on success)."""
    cfg = settings or get_dispatch_settings()
    row = db.session.get(Notification, int(notification_id))
    if row is None or row.status == "sent":
        return "OK"
    user = db.session.get(User, int(row.user_id)) if row.user_id is not None else None
    token = (getattr(user, "fcm_token", None) or "").strip()
    if not token:
        _finish(row, status="skipped", error="no_push_token")
        return "NO_PUSH_TOKEN"

    try:
        provider = build_push_provider(cfg)
    except IntegrationDisabledError as exc:
        _finish(row, status="skipped", error=str(exc))
        return "INTEGRATION_DISABLED"
    except IntegrationMisconfiguredError as exc:
        logger.error("push_provider_misconfigured err=%s", exc)
        _finish(row, status="failed", error=str(exc))
        return "INTEGRATION_MISCONFIGURED"

    result = provider.send(token=token, title=row.title or "", body=row.message or "", data=row.meta_dict())
    if result.token_invalid:
        # Self-heal: forget a token the push service no longer accepts.
        if user is not None and (user.fcm_token or "").strip() == token:
            user.fcm_token = None
            db.session.add(user)
        logger.info("push_token_cleared user_id=%s code=%s", row.user_id, result.code)
    _finish(
        row,
        status="sent" if result.ok else "failed",
        provider=provider.name,
        provider_ref=result.message if result.ok else "",
        error="" if result.ok else f"{result.code}:{result.message}",
    )
    return result.code or ("OK" if result.ok else "PUSH_FAILED")


def deliver_sms(notification_id: int, *, text: str | None = None, settings: DispatchSettings | None = None) -> str:
    """Send a queued SMS row. ``text`` overrides the stored message, which may be masked."""
    cfg = settings or get_dispatch_settings()
    row = db.session.get(Notification, int(notification_id))
    if row is None or row.status == "sent":
        return "OK"
    try:
        provider = build_messaging_provider(cfg)
    except IntegrationDisabledError as exc:
        _finish(row, status="skipped", error=str(exc))
        return "INTEGRATION_DISABLED"
    except IntegrationMisconfiguredError as exc:
        logger.error("sms_provider_misconfigured err=%s", exc)
        _finish(row, status="failed", error=str(exc))
        return "INTEGRATION_MISCONFIGURED"

    reference = str(row.meta_dict().get("reference") or "")
    result = provider.send_sms(to=row.recipient or "", message=text or row.message or "", reference=reference)
    _finish(
        row,
        status="sent" if result.ok else "failed",
        provider=provider.name,
        provider_ref=result.message if result.ok else "",
        error="" if result.ok else f"{result.code}:{result.message}",
    )
    return result.code or ("OK" if result.ok else "SMS_FAILED")


def _enqueue(task_name: str, notification_id: int, **extra) -> bool:
    try:
        from bazaarlink.tasks import dispatch_tasks

        getattr(dispatch_tasks, task_name).delay(notification_id=int(notification_id), **extra)
        return True
    except Exception as exc:
        logger.warning("notification_enqueue_failed task=%s id=%s err=%s", task_name, notification_id, exc)
        return False


def notify(recipient_id: int, title: str, body: str, data: dict | None = None, *, settings: DispatchSettings | None = None) -> Notification | None:
    """Fire-and-forget push to a user. Never raises."""
    cfg = settings or get_dispatch_settings()
    try:
        row = Notification(
            user_id=int(recipient_id),
            channel="push",
            title=(title or "")[:160],
            message=body or "",
            status="queued",
        )
        row.set_meta(data)
        db.session.add(row)
        db.session.commit()
        if cfg.notify_queue_enabled and _enqueue("deliver_push_task", int(row.id)):
            return row
        deliver_push(int(row.id), settings=cfg)
        return row
    except Exception:
        _safe_rollback()
        logger.exception("notify_failed recipient_id=%s title=%s", recipient_id, title)
        return None


def notify_many(recipient_ids: Iterable[int], title: str, body: str, data: dict | None = None, *, settings: DispatchSettings | None = None) -> int:
    sent = 0
    seen: set[int] = set()
    for rid in recipient_ids:
        if rid is None or int(rid) in seen:
            continue
        seen.add(int(rid))
        if notify(int(rid), title, body, data, settings=settings) is not None:
            sent += 1
    return sent


def send_sms(
    number: str,
    text: str,
    *,
    reference: str = "",
    recipient_id: int | None = None,
    stored_text: str | None = None,
    settings: DispatchSettings | None = None,
) -> Notification | None:
    """Fire-and-forget SMS. Never raises.

    ``stored_text`` is what the notification log keeps when ``text`` carries
    a secret; the full text only goes to the provider.
    """
    cfg = settings or get_dispatch_settings()
    secret = stored_text is not None
    if not (number or "").strip():
        logger.warning("sms_skipped_no_number reference=%s", reference)
        return None
    try:
        row = Notification(
            user_id=int(recipient_id) if recipient_id is not None else None,
            channel="sms",
            recipient=(number or "").strip()[:64],
            title="SMS",
            message=(stored_text if secret else text) or "",
            status="queued",
        )
        row.set_meta({"reference": reference} if reference else {})
        db.session.add(row)
        db.session.commit()
        extra = {"text": text} if secret else {}
        if cfg.notify_queue_enabled and _enqueue("deliver_sms_task", int(row.id), **extra):
            return row
        deliver_sms(int(row.id), text=text if secret else None, settings=cfg)
        return row
    except Exception:
        _safe_rollback()
        logger.exception("send_sms_failed reference=%s", reference)
        return None


def register_push_token(user_id: int, token: str) -> User | None:
    clean = (token or "").strip()
    if not clean:
        return None
    user = db.session.get(User, int(user_id))
    if user is None:
        return None
    # A device token belongs to one account at a time.
    User.query.filter(User.fcm_token == clean, User.id != int(user.id)).update(
        {User.fcm_token: None}, synchronize_session=False
    )
    user.fcm_token = clean[:255]
    db.session.add(user)
    db.session.commit()
    logger.info("push_token_registered user_id=%s role=%s", user.id, user.role)
    return user
