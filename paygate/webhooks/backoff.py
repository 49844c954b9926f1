from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from paygate.config import Settings


@dataclass(frozen=True)
class BackoffSchedule:
    """Minimum delay before each delivery attempt, indexed from attempt 1."""

    name: str
    delays_seconds: tuple[int, ...]

    def delay_before(self, attempt: int) -> timedelta:
        """Delay before attempt number ``attempt``; attempts past the table reuse the last entry."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        index = min(attempt, len(self.delays_seconds)) - 1
        return timedelta(seconds=self.delays_seconds[index])


# 0s, 1min, 5min, 30min, 2h
PRODUCTION_SCHEDULE = BackoffSchedule("production", (0, 60, 300, 1800, 7200))
TEST_SCHEDULE = BackoffSchedule("test", (0, 5, 10, 15, 20))


def select_schedule(settings: Settings) -> BackoffSchedule:
    if settings.webhook_retry_intervals_test:
        return TEST_SCHEDULE
    return PRODUCTION_SCHEDULE
