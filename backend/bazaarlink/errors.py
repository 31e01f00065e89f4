from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class DispatchError(RuntimeError):
    """Base error for order lifecycle, pricing and dispatch operations."""

    code = "DISPATCH_ERROR"
    http_status = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None, **details: Any):
        self.message = str(message or self.default_message)
        self.details = {k: v for k, v in details.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class InvalidRequest(DispatchError):
    code = "INVALID_REQUEST"
    http_status = 400
    default_message = "Invalid request"


class InvalidState(DispatchError):
    code = "INVALID_STATE"
    http_status = 409
    default_message = "Order is not in a valid state for this action"


class OrderNotFound(DispatchError):
    code = "ORDER_NOT_FOUND"
    http_status = 404
    default_message = "Order not found"


class AgentProfileMissing(DispatchError):
    code = "AGENT_PROFILE_MISSING"
    http_status = 409
    default_message = "Delivery agent profile or live location missing"


class AgentNotAssigned(DispatchError):
    code = "AGENT_NOT_ASSIGNED"
    http_status = 409
    default_message = "No delivery agent assigned to this order"


class OutOfRange(DispatchError):
    code = "OUT_OF_RANGE"
    http_status = 409
    default_message = "Order pickup point is outside your delivery radius"


class InvalidLocation(DispatchError):
    code = "INVALID_LOCATION"
    http_status = 422
    default_message = "Location is missing or invalid"


class RouteUnavailable(DispatchError):
    code = "ROUTE_UNAVAILABLE"
    http_status = 503
    default_message = "Could not calculate delivery, please try again"


class InvalidAmount(DispatchError):
    code = "INVALID_AMOUNT"
    http_status = 422
    default_message = "Order amount must be greater than zero"


class InvalidVehicleTier(DispatchError):
    code = "INVALID_VEHICLE_TIER"
    http_status = 422
    default_message = "Unknown vehicle tier"


class WrongCode(DispatchError):
    code = "WRONG_CODE"
    http_status = 400
    default_message = "Delivery code does not match"


class CodeExpired(DispatchError):
    code = "CODE_EXPIRED"
    http_status = 409
    default_message = "Delivery code expired, generate a new one"


class IncompleteOrderData(DispatchError):
    code = "INCOMPLETE_ORDER_DATA"
    http_status = 422
    default_message = "Payment metadata is incomplete"


class DuplicatePayment(DispatchError):
    """Idempotent replay of an already processed payment; not a failure."""

    code = "DUPLICATE_PAYMENT"
    http_status = 200
    default_message = "Payment already processed"


@dataclass
class OperationResult:
    ok: bool
    code: str = ""
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"ok": bool(self.ok)}
        if self.code:
            payload["error" if not self.ok else "code"] = self.code
        if self.message:
            payload["message"] = self.message
        payload.update(self.data)
        return payload
