from datetime import datetime

from bazaarlink.extensions import db


class PaymentEvent(db.Model):
    __tablename__ = "payment_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="gateway")
    payment_id = db.Column(db.String(128), nullable=False, unique=True)
    kind = db.Column(db.String(16), nullable=False, default="single")  # single | cart
    status = db.Column(db.String(32), nullable=False, default="processed")
    cart_group_id = db.Column(db.String(64), nullable=True)
    order_count = db.Column(db.Integer, nullable=False, default=0)
    payload_hash = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
