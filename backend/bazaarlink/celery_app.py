from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

from bazaarlink.utils.dispatch_settings import get_dispatch_settings

_SIGNALS_BOUND = False


def _broker_url() -> str:
    return (
        (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or broker_url
    )


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        if isinstance(kwargs, dict) and kwargs.get("notification_id") is not None:
            payload["notification_id"] = kwargs.get("notification_id")
        try:
            flask_app.logger.error(json.dumps(payload, default=str))
        except Exception:
            pass

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        try:
            flask_app.logger.warning(json.dumps(payload))
        except Exception:
            pass

    _SIGNALS_BOUND = True


def create_celery_app(flask_app, *, set_as_current: bool = True) -> Celery:
    broker = _broker_url()
    backend = _result_backend(broker)
    settings = get_dispatch_settings()
    celery = Celery(flask_app.import_name, broker=broker, backend=backend, set_as_current=set_as_current)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule={
            "delivery-code-expiry-sweep": {
                "task": "bazaarlink.tasks.dispatch_tasks.expire_delivery_codes",
                "schedule": float(settings.code_expiry_sweep_seconds),
            },
        },
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["bazaarlink.tasks"], related_name="dispatch_tasks")
    _bind_task_observers(flask_app)
    return celery
