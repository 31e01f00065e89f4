from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from bazaarlink.services.notification_dispatch import RETRYABLE_CODES, deliver_push, deliver_sms


def _task_log(task_name: str, *, status: str, started_at: float, **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    try:
        current_app.logger.info(json.dumps(payload))
    except Exception:
        pass


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(600, max(5, 5 * (2 ** int(max(0, retries))))))


def _deliver(task, task_name: str, send, notification_id: int):
    started = time.perf_counter()
    code = send(int(notification_id))
    if code in RETRYABLE_CODES and int(task.request.retries or 0) < int(task.max_retries or 0):
        countdown = _retry_countdown(int(task.request.retries or 0))
        _task_log(task_name, status="retrying", started_at=started, notification_id=notification_id, code=code, countdown=countdown)
        raise task.retry(exc=RuntimeError(code), countdown=countdown)
    _task_log(
        task_name,
        status="ok" if code == "OK" else "failed",
        started_at=started,
        notification_id=notification_id,
        code=code,
    )
    return {"ok": code == "OK", "code": code}


@shared_task(bind=True, name="bazaarlink.tasks.dispatch_tasks.deliver_push", max_retries=4)
def deliver_push_task(self, *, notification_id: int):
    return _deliver(self, "deliver_push", deliver_push, notification_id)


@shared_task(bind=True, name="bazaarlink.tasks.dispatch_tasks.deliver_sms", max_retries=4)
def deliver_sms_task(self, *, notification_id: int, text: str | None = None):
    return _deliver(self, "deliver_sms", lambda nid: deliver_sms(nid, text=text), notification_id)


@shared_task(bind=True, name="bazaarlink.tasks.dispatch_tasks.expire_delivery_codes", max_retries=2)
def expire_delivery_codes_task(self):
    started = time.perf_counter()
    from bazaarlink.jobs.code_expiry_runner import run_code_expiry_sweep

    result = run_code_expiry_sweep()
    if not result.get("ok") and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log("expire_delivery_codes", status="retrying", started_at=started, detail=result.get("error", ""), countdown=countdown)
        raise self.retry(exc=RuntimeError(str(result.get("error") or "sweep_failed")), countdown=countdown)
    _task_log(
        "expire_delivery_codes",
        status="ok" if result.get("ok") else "failed",
        started_at=started,
        expired=int(result.get("expired") or 0),
    )
    return result
