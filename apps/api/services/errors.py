"""Typed outcomes raised by the credit engine services.

Routers translate these into HTTP responses; nothing here carries raw
persistence errors back to a caller.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class CreditEngineError(Exception):
    """Base class for expected, caller-branchable engine outcomes."""


class InvalidAmountError(CreditEngineError):
    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}")


class InsufficientCreditsError(CreditEngineError):
    def __init__(self, required: int, available: int):
        self.required = int(required)
        self.available = int(available)
        super().__init__(f"insufficient credits: need {self.required}, have {self.available}")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "insufficient_credits", "required": self.required, "available": self.available}


class RateLimitedError(CreditEngineError):
    def __init__(
        self,
        reason: str,
        window: str,
        reset_at: Optional[datetime],
        status: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason
        self.window = window
        self.reset_at = reset_at
        self.status = status or {}
        message = reason
        if reset_at is not None:
            message = f"{reason}, resets at {reset_at.strftime('%Y-%m-%d %H:%M:%S')} UTC"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "rate_limited",
            "reason": self.reason,
            "window": self.window,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "status": self.status,
        }


class PersistenceConflictError(CreditEngineError):
    """Transient datastore conflict; retried internally before surfacing."""


class InvalidConfigurationError(CreditEngineError):
    pass


class UserNotFoundError(CreditEngineError):
    def __init__(self, user_id: Optional[str]):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class UsageNotFoundError(CreditEngineError):
    def __init__(self, usage_id: str):
        self.usage_id = usage_id
        super().__init__(f"Usage record {usage_id} not found")


class PaymentEventFailedError(CreditEngineError):
    """The event was recorded as failed and needs manual reconciliation."""

    def __init__(self, external_event_id: str, message: str):
        self.external_event_id = external_event_id
        super().__init__(f"Payment event {external_event_id} failed: {message}")
