from __future__ import annotations

import logging
from datetime import datetime

from bazaarlink.errors import AgentProfileMissing, InvalidRequest
from bazaarlink.extensions import db
from bazaarlink.models import DeliveryAgentProfile, User
from bazaarlink.services.geo import coerce_coordinate
from bazaarlink.services.pricing import normalize_vehicle_tier

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = ("full_name", "phone", "alternate_phone", "vehicle_model", "vehicle_number")


def upsert_agent_profile(user_id: int, **fields) -> DeliveryAgentProfile:
    """Create or update the delivery profile of a delivery_agent account."""
    user = db.session.get(User, int(user_id))
    if user is None:
        raise AgentProfileMissing(f"User {user_id} not found")
    if (user.role or "") != "delivery_agent":
        raise InvalidRequest("Only delivery agents can have a delivery profile", role=user.role)

    profile = DeliveryAgentProfile.query.filter_by(user_id=int(user.id)).first()
    if profile is None:
        profile = DeliveryAgentProfile(
            user_id=int(user.id),
            full_name=user.name or "",
            phone=user.phone or "",
        )
    for key in _PROFILE_FIELDS:
        if key in fields and fields[key] is not None:
            setattr(profile, key, str(fields[key]).strip())
    if fields.get("vehicle_tier") is not None:
        profile.vehicle_tier = normalize_vehicle_tier(fields["vehicle_tier"])
    if not (profile.phone or "").strip():
        raise InvalidRequest("phone is required")
    profile.updated_at = datetime.utcnow()
    db.session.add(profile)
    db.session.commit()
    return profile


def report_agent_location(agent_id: int, location, *, now: datetime | None = None) -> DeliveryAgentProfile:
    point = coerce_coordinate(location, label="live location")
    profile = DeliveryAgentProfile.query.filter_by(user_id=int(agent_id)).first()
    if profile is None:
        raise AgentProfileMissing(f"No delivery profile for agent {agent_id}")
    profile.live_lat = point.lat
    profile.live_lng = point.lng
    profile.live_location_at = now or datetime.utcnow()
    profile.updated_at = profile.live_location_at
    db.session.add(profile)
    db.session.commit()
    logger.info("agent_location_reported agent_id=%s", agent_id)
    return profile
