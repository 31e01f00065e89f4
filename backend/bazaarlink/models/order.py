from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from bazaarlink.extensions import db


class OrderStatus:
    PAID = "paid"
    DELIVERY_ACCEPTED = "delivery_accepted"
    PICKED_UP = "picked_up"
    DELIVERY_CODE_GENERATED = "delivery_code_generated"
    DELIVERED = "delivered"

    # History-only marker written when a code lapses; never a current status.
    CODE_EXPIRED = "code_expired"

    ALL = (PAID, DELIVERY_ACCEPTED, PICKED_UP, DELIVERY_CODE_GENERATED, DELIVERED)
    TERMINAL = {DELIVERED}
    ALLOWED = {
        PAID: {DELIVERY_ACCEPTED, PICKED_UP},
        DELIVERY_ACCEPTED: {PICKED_UP},
        PICKED_UP: {DELIVERY_CODE_GENERATED},
        DELIVERY_CODE_GENERATED: {DELIVERY_CODE_GENERATED, PICKED_UP, DELIVERED},
        DELIVERED: set(),
    }

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return target in cls.ALLOWED.get(current, set())


@dataclass(frozen=True)
class PartySnapshot:
    """Party details copied onto an order at creation; later account edits never reach it."""

    user_id: int
    name: str
    phone: str
    lat: float | None = None
    lng: float | None = None

    def location(self):
        if self.lat is None or self.lng is None:
            return None
        return (float(self.lat), float(self.lng))

    def to_dict(self) -> dict:
        return {
            "id": int(self.user_id),
            "name": self.name or "",
            "phone": self.phone or "",
            "location": {"lat": self.lat, "lng": self.lng} if self.location() else None,
        }


def _money(value) -> float:
    return float(value) if value is not None else 0.0


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    external_payment_id = db.Column(db.String(128), nullable=False, index=True)
    cart_group_id = db.Column(db.String(64), nullable=True, index=True)

    product_id = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(200), nullable=False, default="")
    product_image = db.Column(db.String(1024), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    wholesaler_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    wholesaler_name = db.Column(db.String(160), nullable=False, default="")
    wholesaler_phone = db.Column(db.String(32), nullable=False, default="")
    wholesaler_lat = db.Column(db.Float, nullable=True)
    wholesaler_lng = db.Column(db.Float, nullable=True)

    retailer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    retailer_name = db.Column(db.String(160), nullable=False, default="")
    retailer_phone = db.Column(db.String(32), nullable=False, default="")
    retailer_lat = db.Column(db.Float, nullable=True)
    retailer_lng = db.Column(db.Float, nullable=True)

    delivery_agent_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    delivery_agent_name = db.Column(db.String(120), nullable=True)
    delivery_agent_phone = db.Column(db.String(32), nullable=True)

    vehicle_tier = db.Column(db.String(24), nullable=False, default="two_wheeler")
    distance_km = db.Column(db.Float, nullable=True)
    duration_minutes = db.Column(db.Float, nullable=True)

    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    delivery_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    retailer_delivery_pay = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    wholesaler_delivery_pay = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    retailer_percent = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    status = db.Column(db.String(32), nullable=False, default=OrderStatus.PAID, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    delivery_code_hash = db.Column(db.String(128), nullable=True)
    delivery_code_issued_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    history = db.relationship(
        "OrderStatusEntry",
        order_by="OrderStatusEntry.seq",
        lazy="select",
        cascade="all, delete-orphan",
    )

    def wholesaler_snapshot(self) -> PartySnapshot:
        return PartySnapshot(
            user_id=int(self.wholesaler_id),
            name=self.wholesaler_name or "",
            phone=self.wholesaler_phone or "",
            lat=self.wholesaler_lat,
            lng=self.wholesaler_lng,
        )

    def retailer_snapshot(self) -> PartySnapshot:
        return PartySnapshot(
            user_id=int(self.retailer_id),
            name=self.retailer_name or "",
            phone=self.retailer_phone or "",
            lat=self.retailer_lat,
            lng=self.retailer_lng,
        )

    def apply_party_snapshots(self, *, wholesaler: PartySnapshot, retailer: PartySnapshot) -> None:
        self.wholesaler_id = int(wholesaler.user_id)
        self.wholesaler_name = wholesaler.name
        self.wholesaler_phone = wholesaler.phone
        self.wholesaler_lat = wholesaler.lat
        self.wholesaler_lng = wholesaler.lng
        self.retailer_id = int(retailer.user_id)
        self.retailer_name = retailer.name
        self.retailer_phone = retailer.phone
        self.retailer_lat = retailer.lat
        self.retailer_lng = retailer.lng

    def origin(self):
        return self.wholesaler_snapshot().location()

    @property
    def has_delivery_code(self) -> bool:
        return bool(self.delivery_code_hash)

    def to_dict(self, *, include_history: bool = False) -> dict:
        payload = {
            "id": int(self.id),
            "external_payment_id": self.external_payment_id,
            "cart_group_id": self.cart_group_id,
            "product": {
                "id": self.product_id,
                "name": self.product_name or "",
                "image": self.product_image or "",
                "quantity": int(self.quantity or 1),
            },
            "wholesaler": self.wholesaler_snapshot().to_dict(),
            "retailer": self.retailer_snapshot().to_dict(),
            "delivery_agent": (
                {
                    "id": int(self.delivery_agent_id),
                    "name": self.delivery_agent_name or "",
                    "phone": self.delivery_agent_phone or "",
                }
                if self.delivery_agent_id is not None
                else None
            ),
            "vehicle_tier": self.vehicle_tier,
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "price": _money(self.price),
            "delivery_total": _money(self.delivery_total),
            "retailer_delivery_pay": _money(self.retailer_delivery_pay),
            "wholesaler_delivery_pay": _money(self.wholesaler_delivery_pay),
            "retailer_percent": int(self.retailer_percent or 0),
            "total_amount": _money(self.total_amount),
            "status": self.status,
            "delivery_code_active": self.has_delivery_code,
            "delivery_code_issued_at": self.delivery_code_issued_at.isoformat() if self.delivery_code_issued_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_history:
            payload["history"] = [entry.to_dict() for entry in self.history]
        return payload


class OrderStatusEntry(db.Model):
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.UniqueConstraint("order_id", "seq", name="uq_order_status_history_order_seq"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    seq = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(32), nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "status": self.status,
            "time": self.created_at.isoformat() if self.created_at else None,
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
        }
