from __future__ import annotations

from paygate.config import Settings

from .base import OutcomeDecider


def get_decider(settings: Settings) -> OutcomeDecider:
    """Return the outcome decider selected by configuration."""
    if settings.test_mode:
        from .simulated import FixedOutcomeDecider

        return FixedOutcomeDecider(
            success=settings.test_payment_success,
            delay_seconds=settings.test_processing_delay_ms / 1000,
        )
    from .simulated import RandomOutcomeDecider

    return RandomOutcomeDecider()
