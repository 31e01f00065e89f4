from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from celery import current_app as current_celery_app
from dispatch_fixtures import T0, DispatchTestCase

from bazaarlink.celery_app import create_celery_app
from bazaarlink.extensions import db
from bazaarlink.jobs import code_expiry_runner
from bazaarlink.models import Notification, OrderStatus
from bazaarlink.services import order_lifecycle_service as lifecycle
from bazaarlink.tasks import dispatch_tasks


class DispatchTasksTestCase(DispatchTestCase):
    def test_beat_schedule_runs_code_expiry_sweep(self):
        celery = create_celery_app(self.app, set_as_current=False)
        entry = celery.conf.beat_schedule["delivery-code-expiry-sweep"]
        self.assertEqual(entry["task"], dispatch_tasks.expire_delivery_codes_task.name)
        self.assertEqual(entry["schedule"], 60.0)
        self.assertTrue(celery.conf.task_acks_late)
        # Tasks called later in this process must not run inside this test's app.
        self.assertIsNot(current_celery_app._get_current_object(), celery)

    def test_retry_backoff_is_capped(self):
        self.assertEqual(dispatch_tasks._retry_countdown(0), 5)
        self.assertEqual(dispatch_tasks._retry_countdown(3), 40)
        self.assertEqual(dispatch_tasks._retry_countdown(12), 600)

    def test_push_task_delivers_queued_row(self):
        user = self.make_user("retailer", "Meena", token="tok-1")
        row = Notification(user_id=int(user.id), channel="push", title="Hi", message="There", status="queued")
        db.session.add(row)
        db.session.commit()

        result = dispatch_tasks.deliver_push_task(notification_id=int(row.id))
        self.assertEqual(result, {"ok": True, "code": "OK"})
        self.assertEqual(db.session.get(Notification, int(row.id)).status, "sent")

    def test_non_retryable_failure_is_reported(self):
        with patch.object(dispatch_tasks, "deliver_sms", return_value="SMS_INVALID_RECIPIENT"):
            result = dispatch_tasks.deliver_sms_task(notification_id=1)
        self.assertEqual(result, {"ok": False, "code": "SMS_INVALID_RECIPIENT"})

    def test_retryable_failure_is_raised_for_retry(self):
        with patch.object(dispatch_tasks, "deliver_push", return_value="PUSH_PROVIDER_DOWN"):
            with self.assertRaises(RuntimeError):
                dispatch_tasks.deliver_push_task(notification_id=1)

    def test_sweep_runner_reports_expired_codes(self):
        wholesaler, retailer = self.make_parties()
        agent = self.make_agent("Suresh")
        order = self.paid_order(wholesaler, retailer)
        lifecycle.pickup_order(order.id, agent.id, now=T0)
        lifecycle.generate_delivery_code(order.id, agent.id, now=T0 + timedelta(minutes=1))

        result = code_expiry_runner.run_code_expiry_sweep(now=T0 + timedelta(minutes=12))
        self.assertTrue(result["ok"])
        self.assertEqual(result["expired"], 1)
        self.assertEqual(lifecycle.get_order(order.id).status, OrderStatus.PICKED_UP)

    def test_sweep_runner_swallows_and_reports_errors(self):
        with patch.object(code_expiry_runner, "expire_stale_delivery_codes", side_effect=RuntimeError("db down")):
            result = code_expiry_runner.run_code_expiry_sweep()
        self.assertFalse(result["ok"])
        self.assertEqual(result["expired"], 0)
        self.assertIn("db down", result["error"])


if __name__ == "__main__":
    unittest.main()
