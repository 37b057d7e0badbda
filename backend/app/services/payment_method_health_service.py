"""Charge history per payment method.

Every processor outcome for a card updates its counters and score. A card
that keeps failing is blocked for a while, and the retry sweep defers
failures charged to a blocked card instead of declining it again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import Caller, require_customer_access
from app.core.config import settings
from app.models.payment_method_health import HealthRecommendation, PaymentMethodHealth
from app.models.shared import ensure_utc, utc_now
from app.repositories.payment_method_health_repository import PaymentMethodHealthRepository

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
RECENT_FAILURE_WINDOW = timedelta(days=7)
RECENT_FAILURE_PENALTY = 0.8
RECENT_SUCCESS_WINDOW = timedelta(days=30)
RECENT_SUCCESS_BONUS = 1.1
MAX_FAILURE_REASONS = 5


def score_health(
    success_count: int,
    failure_count: int,
    last_success: datetime | None,
    last_failure: datetime | None,
    now: datetime,
) -> tuple[float, str]:
    """Return (score in 0..1, recommendation) for the counters.

    The score is the success ratio, discounted after a failure in the last
    week and boosted after a success in the last month.
    """
    total = success_count + failure_count
    if total == 0:
        score = NEUTRAL_SCORE
    else:
        score = success_count / total
        if last_failure is not None and now - last_failure < RECENT_FAILURE_WINDOW:
            score *= RECENT_FAILURE_PENALTY
        if last_success is not None and now - last_success < RECENT_SUCCESS_WINDOW:
            score = min(score * RECENT_SUCCESS_BONUS, 1.0)
    score = round(score, 2)

    if score < 0.3:
        recommendation = HealthRecommendation.UPDATE_PAYMENT_METHOD
    elif score < 0.6 and failure_count > 2:
        recommendation = HealthRecommendation.CONTACT_BANK
    elif score < 0.8:
        recommendation = HealthRecommendation.TRY_ALTERNATIVE
    else:
        recommendation = HealthRecommendation.HEALTHY
    return score, recommendation.value


class PaymentMethodHealthService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = PaymentMethodHealthRepository(db)

    def list_for_customer(self, customer_id: UUID, caller: Caller) -> list[PaymentMethodHealth]:
        require_customer_access(caller, customer_id, "view payment method health")
        return self.repo.get_for_customer(customer_id)

    def blocked_until(
        self, customer_id: UUID, payment_method_id: str, now: datetime | None = None
    ) -> datetime | None:
        """End of the card's block, or None when it may be charged."""
        now = now or utc_now()
        health = self.repo.get(customer_id, payment_method_id)
        if health is None:
            return None
        until = ensure_utc(health.blocked_until)
        if until is None or until <= now:
            return None
        return until

    def record_outcome(
        self,
        customer_id: UUID,
        payment_method_id: str,
        success: bool,
        failure_reason: str | None = None,
        now: datetime | None = None,
    ) -> PaymentMethodHealth:
        now = now or utc_now()
        health = self.repo.get_or_create(customer_id, payment_method_id)

        if success:
            health.success_count = int(health.success_count) + 1  # type: ignore[assignment]
            health.last_successful_payment = now  # type: ignore[assignment]
            # a successful charge proves the card works again
            health.blocked_until = None  # type: ignore[assignment]
        else:
            health.failure_count = int(health.failure_count) + 1  # type: ignore[assignment]
            health.last_failed_payment = now  # type: ignore[assignment]
            reasons = list(health.common_failure_reasons or [])
            if failure_reason and failure_reason not in reasons:
                reasons.append(failure_reason)
            health.common_failure_reasons = reasons[-MAX_FAILURE_REASONS:]  # type: ignore[assignment]

        score, recommendation = score_health(
            int(health.success_count),
            int(health.failure_count),
            ensure_utc(health.last_successful_payment),
            ensure_utc(health.last_failed_payment),
            now,
        )
        health.health_score = score  # type: ignore[assignment]
        health.recommendation = recommendation  # type: ignore[assignment]

        if (
            not success
            and score < settings.PAYMENT_METHOD_BLOCK_SCORE
            and health.failure_count >= settings.PAYMENT_METHOD_BLOCK_MIN_FAILURES
        ):
            health.blocked_until = now + timedelta(days=settings.PAYMENT_METHOD_BLOCK_DAYS)  # type: ignore[assignment]
            logger.info(
                "Blocked payment method %s of customer %s until %s (score %.2f)",
                payment_method_id,
                customer_id,
                health.blocked_until,
                score,
            )
        return self.repo.save(health)
