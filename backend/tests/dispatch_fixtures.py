from __future__ import annotations

import os
import unittest
from datetime import datetime
from unittest.mock import patch

from bazaarlink import create_app
from bazaarlink.extensions import db
from bazaarlink.integrations.messaging import factory as messaging_factory
from bazaarlink.integrations.push import factory as push_factory
from bazaarlink.models import DeliveryAgentProfile, User
from bazaarlink.services.payment_intake_service import on_payment_confirmed
from bazaarlink.services.pricing import quote

# Koramangala-ish pickup point; one degree of latitude is ~111.2 km.
WHOLESALER_AT = (12.9352, 77.6245)
RETAILER_AT = (12.9716, 77.5946)
NEAR_AGENT_AT = (12.9400, 77.6200)
FAR_AGENT_AT = (12.9352 + 0.23, 77.6245)  # ~25.6 km north

T0 = datetime(2026, 3, 2, 9, 0, 0)

TEST_ENV = {
    "ROUTING_PROVIDER": "haversine",
    "INTEGRATIONS_MODE": "sandbox",
    "NOTIFY_QUEUE_ENABLED": "0",
    "PAYMENT_WEBHOOK_SECRET": "",
    "SENTRY_DSN": "",
}


class DispatchTestCase(unittest.TestCase):
    """Fresh app + in-memory database per test, sandbox providers, straight-line routing."""

    def setUp(self):
        env = patch.dict(os.environ, TEST_ENV, clear=False)
        env.start()
        self.addCleanup(env.stop)
        messaging_factory._SANDBOX_PROVIDER = None
        push_factory._SANDBOX_PROVIDER = None

        self.app = create_app({"SQLALCHEMY_DATABASE_URI": self.database_uri(), "TESTING": True})
        self.client = self.app.test_client()
        self.ctx = self.app.app_context()
        self.ctx.push()
        self._seq = 0

    def database_uri(self) -> str:
        return "sqlite:///:memory:"

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def make_user(self, role: str, name: str, *, location=None, token: str | None = None, shop_name: str | None = None) -> User:
        self._seq += 1
        user = User(
            role=role,
            name=name,
            phone=f"98450{self._seq:05d}",
            shop_name=shop_name,
            location_lat=location[0] if location else None,
            location_lng=location[1] if location else None,
            fcm_token=token,
        )
        db.session.add(user)
        db.session.commit()
        return user

    def make_agent(self, name: str, location=NEAR_AGENT_AT, *, token: str | None = None) -> User:
        user = self.make_user("delivery_agent", name, token=token)
        profile = DeliveryAgentProfile(
            user_id=int(user.id),
            full_name=name,
            phone=user.phone,
            vehicle_tier="two_wheeler",
            live_lat=location[0] if location else None,
            live_lng=location[1] if location else None,
            live_location_at=T0 if location else None,
        )
        db.session.add(profile)
        db.session.commit()
        return user

    def make_parties(self):
        wholesaler = self.make_user("wholesaler", "Ravi", location=WHOLESALER_AT, shop_name="Ravi Traders", token="tok-wholesaler")
        retailer = self.make_user("retailer", "Meena", location=RETAILER_AT, shop_name="Meena Stores", token="tok-retailer")
        return wholesaler, retailer

    def single_metadata(self, wholesaler: User, retailer: User, *, price=300, **overrides) -> dict:
        pricing = quote(price, "two_wheeler", 5, 20).to_dict()
        meta = {
            "kind": "single",
            "retailer_id": int(retailer.id),
            "wholesaler_id": int(wholesaler.id),
            "vehicle_tier": "two_wheeler",
            "pricing": pricing,
            "product_id": "sku-rice-25kg",
            "product_name": "Sona Masoori 25kg",
            "price": price,
            "quantity": 1,
        }
        meta.update(overrides)
        return meta

    def paid_order(self, wholesaler: User, retailer: User, *, payment_id: str | None = None, now=T0, **overrides):
        self._seq += 1
        result = on_payment_confirmed(
            payment_id or f"pay_{self._seq:06d}",
            self.single_metadata(wholesaler, retailer, **overrides),
            now=now,
        )
        return result.orders[0]

    def sms_outbox(self) -> list[dict]:
        provider = messaging_factory._SANDBOX_PROVIDER
        return list(provider.sent) if provider is not None else []

    def push_outbox(self) -> list[dict]:
        provider = push_factory._SANDBOX_PROVIDER
        return list(provider.sent) if provider is not None else []
