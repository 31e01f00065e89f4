from __future__ import annotations

import json
import os

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from bazaarlink.integrations.common import IntegrationMisconfiguredError
from bazaarlink.integrations.push.base import PushProvider, PushResult

_APP_NAME = "bazaarlink-push"


def _firebase_app():
    try:
        return firebase_admin.get_app(_APP_NAME)
    except ValueError:
        pass
    raw = (os.getenv("FIREBASE_SERVICE_ACCOUNT") or "").strip()
    if not raw:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing FIREBASE_SERVICE_ACCOUNT")
    try:
        info = json.loads(raw)
    except ValueError as exc:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:FIREBASE_SERVICE_ACCOUNT is not JSON") from exc
    return firebase_admin.initialize_app(credentials.Certificate(info), name=_APP_NAME)


class FcmPushProvider(PushProvider):
    name = "fcm"

    def __init__(self):
        self.app = _firebase_app()

    def send(self, *, token: str, title: str, body: str, data: dict | None = None) -> PushResult:
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data={str(k): str(v) for k, v in (data or {}).items() if v is not None},
        )
        try:
            message_id = messaging.send(message, app=self.app)
            return PushResult(ok=True, code="OK", message=str(message_id))
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as exc:
            return PushResult(ok=False, code="PUSH_TOKEN_UNREGISTERED", message=str(exc)[:200], token_invalid=True)
        except exceptions.InvalidArgumentError as exc:
            # FCM answers INVALID_ARGUMENT for malformed registration tokens.
            return PushResult(ok=False, code="PUSH_TOKEN_INVALID", message=str(exc)[:200], token_invalid=True)
        except exceptions.FirebaseError as exc:
            return PushResult(ok=False, code="PUSH_PROVIDER_DOWN", message=str(exc)[:200])


def fcm_health() -> dict:
    missing = []
    if not (os.getenv("FIREBASE_SERVICE_ACCOUNT") or "").strip():
        missing.append("FIREBASE_SERVICE_ACCOUNT")
    return {"missing": missing}
