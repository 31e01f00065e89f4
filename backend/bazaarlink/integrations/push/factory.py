from __future__ import annotations

from bazaarlink.integrations.common import IntegrationDisabledError
from bazaarlink.integrations.push.base import PushProvider
from bazaarlink.integrations.push.fcm_provider import FcmPushProvider, fcm_health
from bazaarlink.integrations.push.mock_provider import MockPushProvider

_SANDBOX_PROVIDER: MockPushProvider | None = None


def build_push_provider(settings) -> PushProvider:
    global _SANDBOX_PROVIDER
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:push")
    if mode == "sandbox":
        if _SANDBOX_PROVIDER is None:
            _SANDBOX_PROVIDER = MockPushProvider()
        return _SANDBOX_PROVIDER
    return FcmPushProvider()


def push_health(settings) -> dict:
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    missing = fcm_health().get("missing", []) if mode == "live" else []
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "missing": missing}
