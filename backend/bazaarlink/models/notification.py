import json
from datetime import datetime

from bazaarlink.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    channel = db.Column(db.String(32), nullable=False, default="push")  # push | sms
    recipient = db.Column(db.String(64), nullable=True)  # phone number for sms
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False, default="")

    status = db.Column(db.String(24), nullable=False, default="queued")  # queued | sent | failed | skipped
    provider = db.Column(db.String(64), nullable=True)
    provider_ref = db.Column(db.String(160), nullable=True)
    error = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except Exception:
            return {}
        return data if isinstance(data, dict) else {}

    def set_meta(self, meta: dict | None) -> None:
        try:
            self.meta = json.dumps(meta or {}, separators=(",", ":"), default=str)
        except Exception:
            self.meta = "{}"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel": self.channel or "push",
            "title": self.title or "",
            "message": self.message or "",
            "status": self.status or "queued",
            "provider": self.provider or "",
            "provider_ref": self.provider_ref or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "meta": self.meta_dict(),
        }
