from __future__ import annotations

import os

import requests

from bazaarlink.integrations.messaging.base import MessagingProvider, MessageResult


FAST2SMS_URL = "https://www.fast2sms.com/dev/bulkV2"


def _map_fast2sms_error(status: int, message: str) -> str:
    msg = (message or "").lower()
    if status in (401, 403) or "authorization" in msg or "api key" in msg:
        return "SMS_AUTH_FAILED"
    if status == 429:
        return "SMS_RATE_LIMITED"
    if status >= 500:
        return "SMS_PROVIDER_DOWN"
    if "number" in msg or "recipient" in msg:
        return "SMS_INVALID_RECIPIENT"
    return "SMS_PROVIDER_DOWN"


def _national_number(to: str) -> str:
    digits = "".join(ch for ch in (to or "") if ch.isdigit())
    if len(digits) > 10 and digits.startswith("91"):
        digits = digits[-10:]
    return digits


class Fast2SmsMessagingProvider(MessagingProvider):
    name = "fast2sms"

    def __init__(self, *, api_key: str, route: str = "q", timeout: float = 10.0):
        self.api_key = api_key
        self.route = route
        self.timeout = float(timeout)

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        number = _national_number(to)
        if not number:
            return MessageResult(ok=False, code="SMS_INVALID_RECIPIENT", message="missing recipient number")
        payload = {
            "route": self.route,
            "message": message,
            "language": "english",
            "flash": 0,
            "numbers": number,
        }
        headers = {"authorization": self.api_key, "Content-Type": "application/json"}
        try:
            r = requests.post(FAST2SMS_URL, json=payload, headers=headers, timeout=self.timeout)
            data = r.json() if r.content else {}
            if not isinstance(data, dict):
                data = {"payload": data}
            if 200 <= r.status_code < 300 and bool(data.get("return", False)):
                return MessageResult(ok=True, code="OK", message=str(data.get("request_id") or "sent"), raw=data)
            detail = data.get("message") or ""
            if isinstance(detail, list):
                detail = " ".join(str(x) for x in detail)
            code = _map_fast2sms_error(r.status_code, str(detail))
            return MessageResult(ok=False, code=code, message=(str(detail) or f"http_{r.status_code}")[:200], raw=data)
        except requests.Timeout:
            return MessageResult(ok=False, code="SMS_PROVIDER_DOWN", message="timeout")
        except requests.RequestException as e:
            return MessageResult(ok=False, code="SMS_PROVIDER_DOWN", message=str(e)[:200])
        except ValueError as e:
            return MessageResult(ok=False, code="SMS_PROVIDER_DOWN", message=f"unreadable response: {e}"[:200])


def fast2sms_health() -> dict:
    missing = []
    if not (os.getenv("FAST2SMS_API_KEY") or "").strip():
        missing.append("FAST2SMS_API_KEY")
    return {"missing": missing}
