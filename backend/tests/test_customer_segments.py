"""Tests for customer segmentation and suspension policies."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from app.core.config import settings
from app.models.dunning_campaign import DunningCampaign
from app.models.payment_failure import PaymentFailure
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.services.customer_segments import get_customer_segment, grace_period_days
from app.services.suspension_policies import (
    SuspensionContext,
    campaign_exhausted,
    failure_count,
    get_suspension_policy,
    time_based,
)
from tests.conftest import create_customer

NOW = datetime(2026, 9, 1, tzinfo=UTC)


def _add_failures(db, customer, count, created_at=NOW):
    repo = PaymentFailureRepository(db)
    for _ in range(count):
        repo.create(
            customer_id=customer.id,
            amount_cents=Decimal("100"),
            currency="USD",
            failure_reason="Card declined",
            status="pending",
            metadata_={},
            created_at=created_at,
        )


class TestCustomerSegment:
    def test_unknown_customer_is_existing(self, db_session):
        assert get_customer_segment(db_session, uuid.uuid4(), NOW) == "existing"

    def test_new_customer(self, db_session):
        customer = create_customer(db_session, created_at=NOW - timedelta(days=10))
        assert get_customer_segment(db_session, customer.id, NOW) == "new"

    def test_high_value_customer(self, db_session):
        customer = create_customer(
            db_session,
            monthly_recurring_cents=settings.HIGH_VALUE_MONTHLY_CENTS + 1,
            created_at=NOW - timedelta(days=400),
        )
        assert get_customer_segment(db_session, customer.id, NOW) == "high_value"

    def test_at_risk_customer(self, db_session):
        customer = create_customer(db_session, created_at=NOW - timedelta(days=400))
        _add_failures(db_session, customer, 4, created_at=NOW - timedelta(days=10))
        assert get_customer_segment(db_session, customer.id, NOW) == "at_risk"

    def test_old_failures_do_not_count(self, db_session):
        customer = create_customer(db_session, created_at=NOW - timedelta(days=400))
        _add_failures(db_session, customer, 4, created_at=NOW - timedelta(days=120))
        assert get_customer_segment(db_session, customer.id, NOW) == "existing"

    @pytest.mark.parametrize(
        "segment,days",
        [("new", 3), ("existing", 5), ("high_value", 7), ("at_risk", 1)],
    )
    def test_grace_period_days(self, segment, days):
        assert grace_period_days(segment) == days


class TestSuspensionPolicies:
    def test_campaign_exhausted(self):
        failure = PaymentFailure(status="pending", created_at=NOW)
        exhausted = DunningCampaign(status="completed", completion_reason="sequence_exhausted")
        resolved = DunningCampaign(status="completed", completion_reason="payment_resolved")

        assert campaign_exhausted(SuspensionContext(now=NOW, failures=[failure])) is False
        assert campaign_exhausted(
            SuspensionContext(now=NOW, failures=[failure], campaigns=[resolved])
        ) is False
        assert campaign_exhausted(
            SuspensionContext(now=NOW, failures=[failure], campaigns=[exhausted])
        ) is True

    def test_abandoned_failure_alone_does_not_trigger_policy(self):
        # abandonment is handled by the account state service for every policy
        failure = PaymentFailure(status="abandoned", created_at=NOW)
        assert campaign_exhausted(SuspensionContext(now=NOW, failures=[failure])) is False

    def test_failure_count(self):
        failures = [PaymentFailure(status="pending", created_at=NOW) for _ in range(3)]
        assert failure_count(SuspensionContext(now=NOW, failures=failures[:2])) is False
        assert failure_count(SuspensionContext(now=NOW, failures=failures)) is True

    def test_time_based(self):
        old = PaymentFailure(status="pending", created_at=NOW - timedelta(days=14))
        recent = PaymentFailure(status="pending", created_at=NOW - timedelta(days=1))
        assert time_based(SuspensionContext(now=NOW, failures=[recent])) is False
        assert time_based(SuspensionContext(now=NOW, failures=[recent, old])) is True
        assert time_based(SuspensionContext(now=NOW, failures=[])) is False

    def test_lookup(self):
        assert get_suspension_policy() is campaign_exhausted
        assert get_suspension_policy("time_based") is time_based
        with pytest.raises(ValueError, match="Unknown suspension policy"):
            get_suspension_policy("never")
