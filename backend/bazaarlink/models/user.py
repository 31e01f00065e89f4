from datetime import datetime

from bazaarlink.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    role = db.Column(db.String(32), nullable=False, default="retailer")  # wholesaler | retailer | delivery_agent | admin
    name = db.Column(db.String(120), nullable=False, default="")
    phone = db.Column(db.String(32), index=True, nullable=True)
    shop_name = db.Column(db.String(160), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    # Account location, used as pricing/matching input only.
    location_lat = db.Column(db.Float, nullable=True)
    location_lng = db.Column(db.Float, nullable=True)

    fcm_token = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def location(self):
        if self.location_lat is None or self.location_lng is None:
            return None
        return (float(self.location_lat), float(self.location_lng))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role or "retailer",
            "name": self.name or "",
            "phone": self.phone or "",
            "shop_name": self.shop_name or "",
            "address": self.address or "",
            "location": {"lat": self.location_lat, "lng": self.location_lng} if self.location() else None,
            "has_push_token": bool(self.fcm_token),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
