from datetime import datetime

from bazaarlink.extensions import db


class DeliveryAgentProfile(db.Model):
    __tablename__ = "delivery_agent_profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    full_name = db.Column(db.String(120), nullable=False, default="")
    phone = db.Column(db.String(32), nullable=False, default="")
    alternate_phone = db.Column(db.String(32), nullable=True)

    vehicle_tier = db.Column(db.String(24), nullable=False, default="two_wheeler")
    vehicle_model = db.Column(db.String(80), nullable=True)
    vehicle_number = db.Column(db.String(32), nullable=True)

    live_lat = db.Column(db.Float, nullable=True)
    live_lng = db.Column(db.Float, nullable=True)
    live_location_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def live_location(self):
        if self.live_lat is None or self.live_lng is None:
            return None
        return (float(self.live_lat), float(self.live_lng))

    def to_dict(self) -> dict:
        return {
            "user_id": int(self.user_id),
            "full_name": self.full_name or "",
            "phone": self.phone or "",
            "alternate_phone": self.alternate_phone or "",
            "vehicle_tier": self.vehicle_tier or "",
            "vehicle_model": self.vehicle_model or "",
            "vehicle_number": self.vehicle_number or "",
            "live_location": {"lat": self.live_lat, "lng": self.live_lng} if self.live_location() else None,
            "live_location_at": self.live_location_at.isoformat() if self.live_location_at else None,
        }
