from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PushResult:
    ok: bool
    code: str = ""
    message: str = ""
    token_invalid: bool = False
    raw: dict | None = None


class PushProvider:
    name = "unknown"

    def send(self, *, token: str, title: str, body: str, data: dict | None = None) -> PushResult:
        raise NotImplementedError
