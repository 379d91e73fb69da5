"""
Retry/Backoff Policy

Exponential backoff: base * 2^(attempt - 1), i.e. 30s, 60s, 120s, ...
A failed attempt that reaches max_retries is dead-lettered instead.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from wa_gateway.config import settings
from wa_gateway.models.base import utcnow
from wa_gateway.services.http_delivery import DeliveryOutcome


# 2^30 * base already exceeds any sane schedule; keeps timedelta in range when uncapped
MAX_EXPONENT = 30

_UNSET = object()


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    dead_letter: bool
    next_attempt_at: datetime
    delay_seconds: float = 0.0


class RetryPolicy:
    """Pure decision function over (attempt_count, max_retries, outcome)."""

    def __init__(self, base_delay_seconds: float | None = None, max_delay_seconds: float | None | object = _UNSET):
        self.base_delay_seconds = (
            settings.WEBHOOK_RETRY_BASE_SECONDS if base_delay_seconds is None else base_delay_seconds
        )
        # None disables the ceiling
        self.max_delay_seconds = (
            settings.WEBHOOK_RETRY_MAX_DELAY_SECONDS if max_delay_seconds is _UNSET else max_delay_seconds
        )

    def backoff_delay(self, attempt_count: int) -> float:
        exponent = min(max(attempt_count - 1, 0), MAX_EXPONENT)
        delay = self.base_delay_seconds * (2 ** exponent)
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    def decide(
        self,
        attempt_count: int,
        max_retries: int,
        outcome: DeliveryOutcome,
        now: datetime | None = None,
    ) -> RetryDecision:
        now = now or utcnow()

        if outcome.success:
            return RetryDecision(retry=False, dead_letter=False, next_attempt_at=now)

        if attempt_count >= max_retries:
            return RetryDecision(retry=False, dead_letter=True, next_attempt_at=now)

        delay = self.backoff_delay(attempt_count)
        return RetryDecision(
            retry=True,
            dead_letter=False,
            next_attempt_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )

