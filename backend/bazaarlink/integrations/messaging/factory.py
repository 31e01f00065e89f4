from __future__ import annotations

import os

from bazaarlink.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from bazaarlink.integrations.messaging.base import MessagingProvider
from bazaarlink.integrations.messaging.fast2sms_provider import Fast2SmsMessagingProvider, fast2sms_health
from bazaarlink.integrations.messaging.mock_provider import MockMessagingProvider

_SANDBOX_PROVIDER: MockMessagingProvider | None = None


def build_messaging_provider(settings) -> MessagingProvider:
    global _SANDBOX_PROVIDER
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:sms")

    # One process-wide mock so sandbox sends can be inspected.
    if mode == "sandbox":
        if _SANDBOX_PROVIDER is None:
            _SANDBOX_PROVIDER = MockMessagingProvider()
        return _SANDBOX_PROVIDER

    api_key = (os.getenv("FAST2SMS_API_KEY") or "").strip()
    if not api_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing FAST2SMS_API_KEY")
    route = (os.getenv("FAST2SMS_ROUTE") or "q").strip() or "q"
    return Fast2SmsMessagingProvider(api_key=api_key, route=route)


def messaging_health(settings) -> dict:
    mode = (getattr(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    missing = fast2sms_health().get("missing", []) if mode == "live" else []
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "missing": missing}
