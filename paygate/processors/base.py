from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from paygate.domain.models import Payment


@dataclass(frozen=True)
class PaymentOutcome:
    """Normalized result of a processing decision."""

    success: bool
    error_code: str | None = None
    error_description: str | None = None

    @classmethod
    def approved(cls) -> "PaymentOutcome":
        return cls(success=True)

    @classmethod
    def declined(
        cls, code: str = "PAYMENT_FAILED", description: str = "Payment processing failed"
    ) -> "PaymentOutcome":
        return cls(success=False, error_code=code, error_description=description)


class OutcomeDecider(ABC):
    """Decides whether a pending payment succeeds.

    Production would call an external processor here; implementations may be
    deterministic or probabilistic.
    """

    @abstractmethod
    async def decide(self, payment: Payment) -> PaymentOutcome:
        """Return the outcome for ``payment``."""
