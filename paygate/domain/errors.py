"""
Error taxonomy shared by the admission layer and the workers.

Each error carries a machine-readable ``code`` and the HTTP-status class
(``Outcome``) the boundary should render it with. Workers only distinguish
``PermanentDataError`` (fail the job, no retry) from everything else
(retried by the queue's bounded-attempt policy).
"""

from __future__ import annotations

from typing import Any

from .enums import Outcome


class GatewayError(Exception):
    """Base error with an API-facing code and outcome."""

    code = "INTERNAL_ERROR"
    outcome = Outcome.INTERNAL
    retryable = True

    def __init__(self, description: str, *, context: dict[str, Any] | None = None):
        self.description = description
        self.context = context or {}
        super().__init__(description)

    def to_dict(self) -> dict[str, Any]:
        """Error body in the wire format of the API."""
        return {"error": {"code": self.code, "description": self.description}}


class ValidationError(GatewayError):
    """Missing or invalid input."""

    code = "BAD_REQUEST_ERROR"
    outcome = Outcome.BAD_REQUEST
    retryable = False


class NotFoundError(GatewayError):
    """Entity absent or not owned by the calling merchant."""

    code = "NOT_FOUND"
    outcome = Outcome.NOT_FOUND
    retryable = False


class ConflictError(GatewayError):
    """An invariant would be violated by the request."""

    code = "CONFLICT"
    outcome = Outcome.CONFLICT
    retryable = False


class IdempotencyConflictError(ConflictError):
    """A live idempotency record already exists for the key."""

    code = "IDEMPOTENCY_KEY_REUSED"


class RefundAmountExceededError(ConflictError):
    """Refund would push the refunded total above the payment amount."""

    code = "BAD_REQUEST_ERROR"
    outcome = Outcome.BAD_REQUEST


class TransientInfraError(GatewayError):
    """Store or network temporarily unavailable."""

    code = "INTERNAL_ERROR"
    outcome = Outcome.INTERNAL
    retryable = True


class PermanentDataError(GatewayError):
    """A referenced entity vanished between admission and processing."""

    code = "INTERNAL_ERROR"
    outcome = Outcome.INTERNAL
    retryable = False
