from __future__ import annotations

import asyncio
import logging
import random
from typing import Mapping

from paygate.domain.enums import PaymentMethod
from paygate.domain.models import Payment

from .base import OutcomeDecider, PaymentOutcome

logger = logging.getLogger(__name__)


class FixedOutcomeDecider(OutcomeDecider):
    """Deterministic decider for test/sandbox mode."""

    def __init__(self, success: bool = True, delay_seconds: float = 0.0):
        self.success = success
        self.delay_seconds = delay_seconds

    async def decide(self, payment: Payment) -> PaymentOutcome:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        return PaymentOutcome.approved() if self.success else PaymentOutcome.declined()


class RandomOutcomeDecider(OutcomeDecider):
    """Simulated processor: method-specific success rate after a random delay."""

    DEFAULT_SUCCESS_RATES: Mapping[PaymentMethod, float] = {
        PaymentMethod.UPI: 0.90,
        PaymentMethod.CARD: 0.95,
    }

    def __init__(
        self,
        success_rates: Mapping[PaymentMethod, float] | None = None,
        delay_range: tuple[float, float] = (5.0, 10.0),
        rng: random.Random | None = None,
    ):
        self.success_rates = dict(success_rates or self.DEFAULT_SUCCESS_RATES)
        self.delay_range = delay_range
        self.rng = rng or random.Random()

    async def decide(self, payment: Payment) -> PaymentOutcome:
        low, high = self.delay_range
        if high > 0:
            await asyncio.sleep(self.rng.uniform(low, high))
        rate = self.success_rates.get(payment.method, 0.0)
        approved = self.rng.random() < rate
        logger.info(
            "simulated processor decided",
            extra={"payment_id": payment.id, "method": payment.method, "status": "success" if approved else "failed"},
        )
        return PaymentOutcome.approved() if approved else PaymentOutcome.declined()
