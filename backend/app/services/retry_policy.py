"""Retry schedule and failure classification."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from app.core.config import settings


@dataclass(frozen=True)
class FailureClassification:
    classification: str
    severity: str
    max_retry_attempts: int


_CLASSIFICATIONS: dict[str, tuple[str, str, int]] = {
    "insufficient_funds": ("temporary", "medium", 3),
    "card_declined": ("temporary", "medium", 2),
    "generic_decline": ("temporary", "medium", 2),
    "expired_card": ("customer_action_required", "high", 1),
    "authentication_required": ("customer_action_required", "medium", 2),
    "three_d_secure_required": ("customer_action_required", "medium", 2),
    "card_not_supported": ("permanent", "high", 0),
    "currency_not_supported": ("permanent", "high", 0),
    "fraudulent": ("permanent", "critical", 0),
    "stolen_card": ("permanent", "critical", 0),
}


def classify_failure(failure_code: str | None) -> FailureClassification:
    """Map a processor failure code to its classification, severity and retry budget.

    Unknown or missing codes are treated as temporary with the configured
    default number of attempts.
    """
    entry = _CLASSIFICATIONS.get((failure_code or "").strip().lower())
    if entry is None:
        return FailureClassification(
            classification="temporary",
            severity="medium",
            max_retry_attempts=settings.DEFAULT_MAX_RETRY_ATTEMPTS,
        )
    return FailureClassification(*entry)


class BackoffPolicy:
    """Exponential backoff with a cap and additive jitter.

    ``delay(n) = min(base * 2**n, max_delay) + uniform(0, jitter_max)``
    where ``n`` is the failure's retry_count after the attempt was counted.
    """

    def __init__(
        self,
        base_delay: timedelta,
        max_delay: timedelta,
        jitter_max: timedelta,
        rng: Callable[[float, float], float] | None = None,
    ):
        if base_delay <= timedelta(0):
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        if jitter_max < timedelta(0):
            raise ValueError("jitter_max must not be negative")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_max = jitter_max
        self._uniform = rng or random.uniform

    @classmethod
    def from_settings(cls) -> BackoffPolicy:
        return cls(
            base_delay=timedelta(minutes=settings.RETRY_BASE_DELAY_MINUTES),
            max_delay=timedelta(minutes=settings.RETRY_MAX_DELAY_MINUTES),
            jitter_max=timedelta(minutes=settings.RETRY_JITTER_MAX_MINUTES),
        )

    def base_for(self, retry_count: int) -> timedelta:
        exponent = max(retry_count, 0)
        # stop doubling once past the cap so large counts don't overflow timedelta
        delay = self.base_delay
        for _ in range(exponent):
            delay *= 2
            if delay >= self.max_delay:
                return self.max_delay
        return min(delay, self.max_delay)

    def delay(self, retry_count: int) -> timedelta:
        jitter_seconds = self._uniform(0.0, self.jitter_max.total_seconds())
        return self.base_for(retry_count) + timedelta(seconds=jitter_seconds)
