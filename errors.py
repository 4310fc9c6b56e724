"""
errors.py
Membership and billing exceptions.

Every error carries a machine-readable code and an HTTP-ish status so a caller
can map it to a response without inspecting the message.
"""

from __future__ import annotations

from typing import Any


class MembershipError(Exception):
    """
    Base error for the lifecycle engine.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code for this error type
        context: Additional context about the error
    """

    default_code = "MEMBERSHIP_ERROR"
    default_status = 400

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.status_code = status_code or self.default_status
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary safe to return to a caller."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
        }


class ValidationError(MembershipError):
    """Missing or malformed input."""

    default_code = "VALIDATION_ERROR"


class InvalidPlan(ValidationError):
    default_code = "INVALID_PLAN"


class InvalidInterval(ValidationError):
    default_code = "INVALID_INTERVAL"


class UnsupportedExtension(ValidationError):
    default_code = "UNSUPPORTED_EXTENSION"


class NotFoundError(MembershipError):
    default_code = "NOT_FOUND"
    default_status = 404


class InvalidTransition(MembershipError):
    """Illegal state change, e.g. unfreezing an Active membership."""

    default_code = "INVALID_TRANSITION"
    default_status = 409


class FreezeTooShort(InvalidTransition):
    default_code = "FREEZE_TOO_SHORT"


class ConcurrentModificationError(MembershipError):
    """Another operation changed the membership first."""

    default_code = "CONCURRENT_MODIFICATION"
    default_status = 409


class PaymentError(MembershipError):
    """
    Payment gateway failure.

    Messages stay generic; provider details go to the log only.
    """

    default_code = "PAYMENT_ERROR"
    default_status = 402
