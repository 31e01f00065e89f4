from __future__ import annotations

from bazaarlink.integrations.push.base import PushProvider, PushResult


class MockPushProvider(PushProvider):
    """Records sends; tokens starting with ``stale`` behave like unregistered devices."""

    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []

    def send(self, *, token: str, title: str, body: str, data: dict | None = None) -> PushResult:
        if (token or "").startswith("stale"):
            return PushResult(ok=False, code="PUSH_TOKEN_UNREGISTERED", message="mock unregistered token", token_invalid=True)
        self.sent.append({"token": token, "title": title, "body": body, "data": dict(data or {})})
        return PushResult(ok=True, code="OK", message=f"mock-{len(self.sent)}")
