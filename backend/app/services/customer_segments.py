"""Customer segmentation shared by dunning, account state and analytics."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.shared import ensure_utc, utc_now
from app.repositories.customer_repository import CustomerRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository


class CustomerSegment(str, Enum):
    NEW = "new"
    EXISTING = "existing"
    HIGH_VALUE = "high_value"
    AT_RISK = "at_risk"


NEW_CUSTOMER_DAYS = 30
AT_RISK_WINDOW_DAYS = 90
AT_RISK_FAILURE_COUNT = 3


def get_customer_segment(db: Session, customer_id: UUID, now: datetime | None = None) -> str:
    """Segment a customer.

    Unknown customers are ``existing``. Otherwise, in order: younger than
    30 days is ``new``, monthly recurring revenue above the high-value
    threshold is ``high_value``, more than three failures in 90 days is
    ``at_risk``.
    """
    now = now or utc_now()
    customer = CustomerRepository(db).get_by_id(customer_id)
    if customer is None:
        return CustomerSegment.EXISTING.value

    created_at = ensure_utc(customer.created_at)
    if created_at is not None and now - created_at < timedelta(days=NEW_CUSTOMER_DAYS):
        return CustomerSegment.NEW.value
    if int(customer.monthly_recurring_cents or 0) > settings.HIGH_VALUE_MONTHLY_CENTS:
        return CustomerSegment.HIGH_VALUE.value
    recent_failures = PaymentFailureRepository(db).count_since(
        customer_id, now - timedelta(days=AT_RISK_WINDOW_DAYS)
    )
    if recent_failures > AT_RISK_FAILURE_COUNT:
        return CustomerSegment.AT_RISK.value
    return CustomerSegment.EXISTING.value


def grace_period_days(segment: str) -> int:
    return {
        CustomerSegment.NEW.value: settings.GRACE_PERIOD_DAYS_NEW,
        CustomerSegment.HIGH_VALUE.value: settings.GRACE_PERIOD_DAYS_HIGH_VALUE,
        CustomerSegment.AT_RISK.value: settings.GRACE_PERIOD_DAYS_AT_RISK,
    }.get(segment, settings.GRACE_PERIOD_DAYS_EXISTING)
