import os
import time
import logging
from typing import Optional, Dict, Any

import jwt
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)


def _secret() -> str:
    if has_app_context():
        configured = current_app.config.get("SECRET_KEY")
        if configured:
            return str(configured)
    return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def create_access_token(user_id: int, role: str = "", ttl_seconds: int = 60 * 60 * 24 * 7) -> str:
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "role": role or "",
        "iat": now,
        "exp": now + ttl_seconds,
        "type": "access",
    }
    return jwt.encode(payload, _secret(), algorithm="HS256")


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, _secret(), algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.info("jwt_decode_failed err=%s", e.__class__.__name__)
        return None


def get_bearer_token(auth_header: str) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None
