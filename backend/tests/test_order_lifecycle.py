from __future__ import annotations

import os
import shutil
import tempfile
import threading
import unittest
from datetime import timedelta
from unittest.mock import patch

from dispatch_fixtures import FAR_AGENT_AT, T0, DispatchTestCase

from bazaarlink.errors import (
    AgentNotAssigned,
    AgentProfileMissing,
    CodeExpired,
    InvalidRequest,
    InvalidState,
    OutOfRange,
    WrongCode,
)
from bazaarlink.extensions import db
from bazaarlink.models import DeliveryAgentProfile, Notification, OrderStatus
from bazaarlink.services import notification_dispatch
from bazaarlink.services import order_lifecycle_service as lifecycle
from bazaarlink.utils.jwt_utils import create_access_token


def _minutes(n: float):
    return T0 + timedelta(minutes=n)


class OrderLifecycleTestCase(DispatchTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler, self.retailer = self.make_parties()
        self.agent = self.make_agent("Suresh", token="tok-agent")
        self.order = self.paid_order(self.wholesaler, self.retailer)
        self.order_id = int(self.order.id)

    def _history(self, order_id=None):
        order = lifecycle.get_order(order_id or self.order_id)
        return [entry.status for entry in order.history]

    def _assert_invariants(self, order):
        entries = list(order.history)
        self.assertTrue(entries)
        self.assertEqual(entries[-1].status, order.status)
        stamps = [e.created_at for e in entries]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual([e.seq for e in entries], list(range(1, len(entries) + 1)))
        has_code = order.status == OrderStatus.DELIVERY_CODE_GENERATED
        self.assertEqual(order.delivery_code_hash is not None, has_code)
        self.assertEqual(order.delivery_code_issued_at is not None, has_code)

    def _to_code_generated(self, at=None):
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(5))
        return lifecycle.generate_delivery_code(self.order_id, self.agent.id, now=at or _minutes(30))

    def test_full_delivery_flow(self):
        order = lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        self.assertEqual(order.status, OrderStatus.DELIVERY_ACCEPTED)
        self.assertEqual(order.delivery_agent_id, self.agent.id)
        self.assertEqual(order.delivery_agent_name, "Suresh")
        self._assert_invariants(order)

        order = lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(5))
        self.assertEqual(order.status, OrderStatus.PICKED_UP)
        self._assert_invariants(order)

        order, code = lifecycle.generate_delivery_code(self.order_id, self.agent.id, now=_minutes(30))
        self.assertEqual(order.status, OrderStatus.DELIVERY_CODE_GENERATED)
        self.assertRegex(code, r"^\d{4}$")
        self.assertNotEqual(order.delivery_code_hash, code)
        self._assert_invariants(order)

        order = lifecycle.verify_delivery_code(self.order_id, code, self.agent.id, now=_minutes(33))
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self._assert_invariants(order)
        self.assertEqual(
            self._history(),
            [
                OrderStatus.PAID,
                OrderStatus.DELIVERY_ACCEPTED,
                OrderStatus.PICKED_UP,
                OrderStatus.DELIVERY_CODE_GENERATED,
                OrderStatus.DELIVERED,
            ],
        )
        self.assertEqual(order.version, 5)

    def test_code_sms_goes_to_retailer_with_agent_details(self):
        with patch.object(lifecycle, "_new_code", return_value="7319"):
            _order, code = self._to_code_generated()
        sms = [m for m in self.sms_outbox() if code in m["message"]]
        self.assertEqual(len(sms), 1)
        self.assertEqual(sms[0]["to"], self.retailer.phone)
        self.assertIn("Suresh", sms[0]["message"])
        self.assertIn(self.agent.phone, sms[0]["message"])
        # Push bodies never carry the code.
        self.assertFalse(any(code in p["body"] for p in self.push_outbox()))

    def test_code_is_masked_in_notification_log(self):
        with patch.object(lifecycle, "_new_code", return_value="7319"):
            self._to_code_generated()
        self.assertEqual(Notification.query.filter(Notification.message.contains("7319")).count(), 0)
        row = Notification.query.filter_by(channel="sms").one()
        self.assertIn("is ****.", row.message)
        self.assertEqual(row.status, "sent")

        res = self.client.get(
            "/api/notifications",
            headers={"Authorization": f"Bearer {create_access_token(int(self.retailer.id), 'retailer')}"},
        )
        self.assertNotIn("7319", res.get_data(as_text=True))

    def test_queued_code_sms_hands_plain_text_to_worker(self):
        with patch.dict(os.environ, {"NOTIFY_QUEUE_ENABLED": "1"}):
            with patch.object(notification_dispatch, "_enqueue", return_value=True) as enqueue:
                with patch.object(lifecycle, "_new_code", return_value="7319"):
                    self._to_code_generated()
        sms_calls = [c for c in enqueue.call_args_list if c.args[0] == "deliver_sms_task"]
        self.assertEqual(len(sms_calls), 1)
        self.assertIn("is 7319.", sms_calls[0].kwargs["text"])
        self.assertEqual(Notification.query.filter(Notification.message.contains("7319")).count(), 0)

    def test_generate_code_on_paid_order_is_invalid_state(self):
        with self.assertRaises(InvalidState):
            lifecycle.generate_delivery_code(self.order_id, now=_minutes(1))
        order = lifecycle.get_order(self.order_id)
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertIsNone(order.delivery_code_hash)
        self.assertEqual(self.sms_outbox(), [])

    def test_code_expires_after_ten_minutes(self):
        _order, code = self._to_code_generated(at=_minutes(30))
        with self.assertRaises(CodeExpired):
            lifecycle.verify_delivery_code(self.order_id, code, self.agent.id, now=_minutes(41))
        order = lifecycle.get_order(self.order_id)
        self.assertEqual(order.status, OrderStatus.PICKED_UP)
        self.assertIsNone(order.delivery_code_hash)
        self.assertIsNone(order.delivery_code_issued_at)
        self.assertEqual(self._history()[-2:], [OrderStatus.CODE_EXPIRED, OrderStatus.PICKED_UP])
        self._assert_invariants(order)

        # A fresh code can be issued afterwards.
        order, fresh = lifecycle.generate_delivery_code(self.order_id, self.agent.id, now=_minutes(42))
        self.assertEqual(order.status, OrderStatus.DELIVERY_CODE_GENERATED)
        delivered = lifecycle.verify_delivery_code(self.order_id, fresh, self.agent.id, now=_minutes(43))
        self.assertEqual(delivered.status, OrderStatus.DELIVERED)

    def test_code_still_valid_at_exactly_ten_minutes(self):
        _order, code = self._to_code_generated(at=_minutes(30))
        order = lifecycle.verify_delivery_code(self.order_id, code, self.agent.id, now=_minutes(40))
        self.assertEqual(order.status, OrderStatus.DELIVERED)

    def test_wrong_code_does_not_mutate(self):
        _order, code = self._to_code_generated()
        before = lifecycle.get_order(self.order_id)
        version, stored_hash = before.version, before.delivery_code_hash
        wrong = "0000" if code != "0000" else "1111"
        for attempt in (wrong, code + " ", int(code), None):
            with self.subTest(attempt=attempt):
                with self.assertRaises(WrongCode):
                    lifecycle.verify_delivery_code(self.order_id, attempt, self.agent.id, now=_minutes(31))
        after = lifecycle.get_order(self.order_id)
        self.assertEqual(after.version, version)
        self.assertEqual(after.delivery_code_hash, stored_hash)
        self.assertEqual(after.status, OrderStatus.DELIVERY_CODE_GENERATED)

        delivered = lifecycle.verify_delivery_code(self.order_id, code, self.agent.id, now=_minutes(32))
        self.assertEqual(delivered.status, OrderStatus.DELIVERED)

    def test_rotation_invalidates_previous_code(self):
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(5))
        with patch.object(lifecycle, "_new_code", side_effect=["1111", "2222"]):
            lifecycle.generate_delivery_code(self.order_id, self.agent.id, now=_minutes(30))
            order, second = lifecycle.generate_delivery_code(self.order_id, self.agent.id, now=_minutes(35))
        self.assertEqual(second, "2222")
        self.assertEqual(order.status, OrderStatus.DELIVERY_CODE_GENERATED)
        self._assert_invariants(order)

        with self.assertRaises(WrongCode):
            lifecycle.verify_delivery_code(self.order_id, "1111", self.agent.id, now=_minutes(36))
        # The rotated code's window starts at rotation time.
        delivered = lifecycle.verify_delivery_code(self.order_id, "2222", self.agent.id, now=_minutes(44))
        self.assertEqual(delivered.status, OrderStatus.DELIVERED)

    def test_far_agent_cannot_accept(self):
        far = self.make_agent("Farooq", location=FAR_AGENT_AT)
        with self.assertRaises(OutOfRange) as ctx:
            lifecycle.accept_order(self.order_id, far.id, now=_minutes(1))
        self.assertGreater(ctx.exception.details["distance_km"], 20.0)
        order = lifecycle.get_order(self.order_id)
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertIsNone(order.delivery_agent_id)
        self.assertEqual(self._history(), [OrderStatus.PAID])

    def test_far_agent_cannot_claim_paid_order_directly(self):
        far = self.make_agent("Farooq", location=FAR_AGENT_AT)
        with self.assertRaises(OutOfRange):
            lifecycle.pickup_order(self.order_id, far.id, now=_minutes(1))

    def test_agent_needs_profile_and_live_location(self):
        no_profile = self.make_user("delivery_agent", "Nobody")
        with self.assertRaises(AgentProfileMissing):
            lifecycle.accept_order(self.order_id, no_profile.id)
        silent = self.make_agent("Silent", location=None)
        with self.assertRaises(AgentProfileMissing):
            lifecycle.accept_order(self.order_id, silent.id)
        self.assertEqual(lifecycle.get_order(self.order_id).status, OrderStatus.PAID)

    def test_direct_pickup_from_paid(self):
        order = lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(2))
        self.assertEqual(order.status, OrderStatus.PICKED_UP)
        self.assertEqual(order.delivery_agent_id, self.agent.id)
        self.assertEqual(self._history(), [OrderStatus.PAID, OrderStatus.PICKED_UP])

    def test_only_accepting_agent_can_pick_up(self):
        other = self.make_agent("Other")
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        with self.assertRaises(InvalidState):
            lifecycle.pickup_order(self.order_id, other.id, now=_minutes(2))
        self.assertEqual(lifecycle.get_order(self.order_id).status, OrderStatus.DELIVERY_ACCEPTED)

    def test_pickup_snapshot_uses_current_profile(self):
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        profile = DeliveryAgentProfile.query.filter_by(user_id=self.agent.id).first()
        profile.phone = "9000000009"
        db.session.commit()
        order = lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(2))
        self.assertEqual(order.delivery_agent_phone, "9000000009")

    def test_second_accept_loses(self):
        rival = self.make_agent("Rival")
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        with self.assertRaises(InvalidState):
            lifecycle.accept_order(self.order_id, rival.id, now=_minutes(1))
        order = lifecycle.get_order(self.order_id)
        self.assertEqual(order.delivery_agent_id, self.agent.id)
        self.assertEqual(self._history().count(OrderStatus.DELIVERY_ACCEPTED), 1)

    def test_stale_version_write_is_rejected(self):
        stale = lifecycle.get_order(self.order_id)
        self.assertEqual(stale.version, 1)
        db.session.expunge(stale)

        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        with self.assertRaises(InvalidState) as ctx:
            lifecycle._transition(
                stale,
                expected={OrderStatus.PAID},
                target=OrderStatus.DELIVERY_ACCEPTED,
                values={"delivery_agent_id": int(self.agent.id)},
                now=_minutes(1),
            )
        self.assertEqual(ctx.exception.details["current_status"], OrderStatus.DELIVERY_ACCEPTED)
        order = lifecycle.get_order(self.order_id)
        self.assertEqual(order.version, 2)
        self.assertEqual(self._history(), [OrderStatus.PAID, OrderStatus.DELIVERY_ACCEPTED])

    def test_history_time_never_goes_backwards(self):
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(10))
        order = lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(3))
        stamps = [e.created_at for e in order.history]
        self.assertEqual(stamps[-1], _minutes(10))
        self._assert_invariants(order)

    def test_code_request_from_other_agent(self):
        other = self.make_agent("Other")
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        lifecycle.pickup_order(self.order_id, self.agent.id, now=_minutes(2))
        with self.assertRaises(AgentNotAssigned):
            lifecycle.generate_delivery_code(self.order_id, other.id, now=_minutes(3))

    def test_delivered_is_terminal(self):
        _order, code = self._to_code_generated()
        lifecycle.verify_delivery_code(self.order_id, code, self.agent.id, now=_minutes(31))
        for call in (
            lambda: lifecycle.accept_order(self.order_id, self.agent.id),
            lambda: lifecycle.pickup_order(self.order_id, self.agent.id),
            lambda: lifecycle.generate_delivery_code(self.order_id, self.agent.id),
            lambda: lifecycle.verify_delivery_code(self.order_id, code, self.agent.id),
        ):
            with self.assertRaises(InvalidState):
                call()

    def test_parties_are_notified(self):
        lifecycle.accept_order(self.order_id, self.agent.id, now=_minutes(1))
        rows = Notification.query.filter_by(user_id=self.retailer.id, channel="push").all()
        self.assertTrue(any(r.title == "Delivery partner assigned" for r in rows))
        self.assertTrue(all(r.status == "sent" for r in rows))


class ActiveOrderListingTestCase(DispatchTestCase):
    def setUp(self):
        super().setUp()
        self.wholesaler, self.retailer = self.make_parties()
        self.agent = self.make_agent("Suresh")

    def _deliver(self, order_id, at):
        lifecycle.accept_order(order_id, self.agent.id, now=at)
        lifecycle.pickup_order(order_id, self.agent.id, now=at)
        _order, code = lifecycle.generate_delivery_code(order_id, self.agent.id, now=at)
        return lifecycle.verify_delivery_code(order_id, code, self.agent.id, now=at)

    def test_delivered_orders_drop_out_after_grace_window(self):
        delivered = self.paid_order(self.wholesaler, self.retailer, now=T0)
        open_order = self.paid_order(self.wholesaler, self.retailer, now=T0 + timedelta(minutes=1))
        self._deliver(int(delivered.id), T0 + timedelta(minutes=2))

        soon = lifecycle.list_active_orders("retailer", self.retailer.id, now=T0 + timedelta(minutes=7))
        self.assertEqual([o.id for o in soon], [open_order.id, delivered.id])

        later = lifecycle.list_active_orders("retailer", self.retailer.id, now=T0 + timedelta(minutes=13))
        self.assertEqual([o.id for o in later], [open_order.id])

        for role, key in (("wholesaler", self.wholesaler.id), ("delivery_agent", self.agent.id)):
            with self.subTest(role=role):
                rows = lifecycle.list_active_orders(role, key, now=T0 + timedelta(minutes=13))
                self.assertNotIn(delivered.id, [o.id for o in rows])

    def test_other_parties_orders_not_listed(self):
        other_retailer = self.make_user("retailer", "Other", location=(12.97, 77.59))
        self.paid_order(self.wholesaler, self.retailer)
        self.assertEqual(lifecycle.list_active_orders("retailer", other_retailer.id, now=T0), [])

    def test_unknown_role(self):
        with self.assertRaises(InvalidRequest):
            lifecycle.list_active_orders("admin", 1)
        with self.assertRaises(InvalidRequest):
            lifecycle.list_active_orders("retailer", "abc")

    def test_available_orders_for_nearby_agent(self):
        order = self.paid_order(self.wholesaler, self.retailer)
        far = self.make_agent("Farooq", location=FAR_AGENT_AT)

        rows = lifecycle.list_available_orders(self.agent.id)
        self.assertEqual([o.id for o, _km in rows], [order.id])
        self.assertLess(rows[0][1], 2.0)
        self.assertEqual(lifecycle.list_available_orders(far.id), [])

        lifecycle.accept_order(int(order.id), self.agent.id, now=T0)
        self.assertEqual(lifecycle.list_available_orders(self.agent.id), [])


class CodeExpirySweepTestCase(DispatchTestCase):
    def test_sweep_regresses_only_lapsed_codes(self):
        from bazaarlink.jobs.code_expiry_runner import run_code_expiry_sweep

        wholesaler, retailer = self.make_parties()
        agent = self.make_agent("Suresh")
        issued = {}
        for minute in (0, 2, 8):
            order = self.paid_order(wholesaler, retailer)
            lifecycle.accept_order(int(order.id), agent.id, now=T0)
            lifecycle.pickup_order(int(order.id), agent.id, now=T0)
            lifecycle.generate_delivery_code(int(order.id), agent.id, now=T0 + timedelta(minutes=minute))
            issued[minute] = int(order.id)

        result = run_code_expiry_sweep(now=T0 + timedelta(minutes=13))
        self.assertEqual(result, {"ok": True, "expired": 2, "ts": result["ts"]})
        self.assertEqual(lifecycle.get_order(issued[0]).status, OrderStatus.PICKED_UP)
        self.assertEqual(lifecycle.get_order(issued[2]).status, OrderStatus.PICKED_UP)
        self.assertEqual(lifecycle.get_order(issued[8]).status, OrderStatus.DELIVERY_CODE_GENERATED)
        self.assertEqual(
            [e.status for e in lifecycle.get_order(issued[0]).history][-2:],
            [OrderStatus.CODE_EXPIRED, OrderStatus.PICKED_UP],
        )
        self.assertEqual(lifecycle.expire_stale_delivery_codes(now=T0 + timedelta(minutes=13)), 0)


class ConcurrentAcceptTestCase(DispatchTestCase):
    """Two agents race for one order against a shared file database."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="bazaarlink-race-")
        self.addCleanup(shutil.rmtree, self.tmpdir, True)
        super().setUp()
        self.wholesaler, self.retailer = self.make_parties()
        self.first = self.make_agent("Suresh")
        self.second = self.make_agent("Rival", location=(12.9380, 77.6210))
        self.order_id = int(self.paid_order(self.wholesaler, self.retailer).id)
        db.session.commit()

    def database_uri(self) -> str:
        return f"sqlite:///{os.path.join(self.tmpdir, 'race.db')}"

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
        self.ctx.pop()

    def test_simultaneous_accepts_have_one_winner(self):
        outcomes: list[str] = []
        barrier = threading.Barrier(2)

        def accept(agent_id: int):
            with self.app.app_context():
                try:
                    barrier.wait(timeout=5)
                    lifecycle.accept_order(self.order_id, agent_id)
                    outcomes.append("ok")
                except InvalidState:
                    outcomes.append("conflict")
                except Exception as exc:
                    outcomes.append(repr(exc))
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=accept, args=(int(uid),)) for uid in (self.first.id, self.second.id)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(sorted(outcomes), ["conflict", "ok"])
        db.session.expire_all()
        order = lifecycle.get_order(self.order_id)
        self.assertEqual(order.status, OrderStatus.DELIVERY_ACCEPTED)
        self.assertEqual(order.version, 2)
        self.assertIn(order.delivery_agent_id, {self.first.id, self.second.id})
        accepted = [e for e in order.history if e.status == OrderStatus.DELIVERY_ACCEPTED]
        self.assertEqual(len(accepted), 1)
        self.assertEqual(accepted[0].actor_id, order.delivery_agent_id)


if __name__ == "__main__":
    unittest.main()
