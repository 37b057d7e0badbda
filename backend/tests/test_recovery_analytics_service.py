"""Tests for RecoveryAnalyticsService daily roll-ups."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.core.exceptions import AccessDeniedError
from app.models.recovery_analytics import RecoveryAnalyticsRecord
from app.repositories.dunning_campaign_repository import DunningCampaignRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.schemas.recovery_analytics import RecoveryAnalyticsFilter
from app.services.recovery_analytics_service import RecoveryAnalyticsService
from tests.conftest import ADMIN_CALLER, create_customer, customer_caller

DAY = date(2026, 9, 1)
NOON = datetime(2026, 9, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def customer(db_session):
    return create_customer(db_session, created_at=datetime(2025, 1, 1, tzinfo=UTC))


@pytest.fixture
def recovered(db_session, customer):
    """A failure recovered six hours in, with a completed campaign and two messages."""
    failure = PaymentFailureRepository(db_session).create(
        customer_id=customer.id,
        amount_cents=Decimal("1000"),
        currency="USD",
        failure_reason="Card declined",
        status="resolved",
        resolution_type="retry_success",
        resolved_at=NOON + timedelta(hours=6),
        metadata_={},
        created_at=NOON,
    )
    campaign = DunningCampaignRepository(db_session).create(
        customer_id=customer.id,
        payment_failure_id=failure.id,
        campaign_type="standard",
        total_steps=5,
        status="completed",
        completion_reason="payment_resolved",
        communication_channels=["email", "sms"],
        ab_test_group="control",
        personalization_data={},
        metadata_={},
        started_at=NOON,
    )
    communications = DunningCommunicationRepository(db_session)
    communications.create(
        campaign_id=campaign.id,
        customer_id=customer.id,
        channel="email",
        template_key="standard_email_step1",
        sequence_step=1,
        status="opened",
        sent_at=NOON + timedelta(hours=1),
        delivered_at=NOON + timedelta(hours=1),
        opened_at=NOON + timedelta(hours=2),
    )
    communications.create(
        campaign_id=campaign.id,
        customer_id=customer.id,
        channel="sms",
        template_key="standard_sms_step1",
        sequence_step=1,
        status="sent",
        sent_at=NOON + timedelta(hours=1),
    )
    return failure


@pytest.fixture
def unrecovered(db_session, customer):
    return PaymentFailureRepository(db_session).create(
        customer_id=customer.id,
        amount_cents=Decimal("500"),
        currency="USD",
        failure_reason="Insufficient funds",
        status="pending",
        metadata_={},
        created_at=NOON + timedelta(hours=3),
    )


def _by_group(records):
    return {(r.campaign_type, r.customer_segment): r for r in records}


class TestGenerateDailyMetrics:
    def test_groups_by_campaign_type_and_segment(self, db_session, recovered, unrecovered):
        records = RecoveryAnalyticsService(db_session).generate_daily_metrics(DAY, ADMIN_CALLER)

        groups = _by_group(records)
        assert set(groups) == {("none", "existing"), ("standard", "existing")}

        standard = groups[("standard", "existing")]
        assert standard.date == DAY
        assert standard.total_failures == 1
        assert standard.total_recovered == 1
        assert standard.recovery_rate == 1.0
        assert Decimal(str(standard.revenue_recovered_cents)) == Decimal("1000")
        assert standard.avg_recovery_time_hours == 6.0
        assert standard.total_campaigns_started == 1
        assert standard.total_campaigns_completed == 1
        assert standard.total_communications_sent == 2
        assert standard.delivery_rate == 0.5
        assert standard.email_open_rate == 1.0
        assert standard.email_click_rate == 0.0

        uncampaigned = groups[("none", "existing")]
        assert uncampaigned.total_failures == 1
        assert uncampaigned.total_recovered == 0
        assert uncampaigned.recovery_rate == 0.0
        assert uncampaigned.total_communications_sent == 0

    def test_other_days_are_excluded(self, db_session, recovered):
        records = RecoveryAnalyticsService(db_session).generate_daily_metrics(
            DAY + timedelta(days=1), ADMIN_CALLER
        )
        assert records == []

    def test_rerun_overwrites(self, db_session, recovered, unrecovered):
        service = RecoveryAnalyticsService(db_session)
        first = service.generate_daily_metrics(DAY, ADMIN_CALLER)

        unrecovered.status = "resolved"
        unrecovered.resolved_at = NOON + timedelta(hours=5)
        db_session.commit()
        second = service.generate_daily_metrics(DAY, ADMIN_CALLER)

        assert {r.id for r in first} == {r.id for r in second}
        assert db_session.query(RecoveryAnalyticsRecord).count() == 2
        assert _by_group(second)[("none", "existing")].total_recovered == 1

    def test_requires_admin(self, db_session, customer):
        with pytest.raises(AccessDeniedError):
            RecoveryAnalyticsService(db_session).generate_daily_metrics(
                DAY, customer_caller(customer.id)
            )


class TestQueries:
    def test_filters_and_summary(self, db_session, recovered, unrecovered):
        service = RecoveryAnalyticsService(db_session)
        service.generate_daily_metrics(DAY, ADMIN_CALLER)

        filters = RecoveryAnalyticsFilter(start_date=DAY, end_date=DAY, campaign_type="standard")
        records = service.get_analytics(filters, ADMIN_CALLER)
        assert [r.campaign_type for r in records] == ["standard"]

        summary = service.get_summary(
            RecoveryAnalyticsFilter(start_date=DAY, end_date=DAY), ADMIN_CALLER
        )
        assert summary.total_failures == 2
        assert summary.total_recovered == 1
        assert summary.recovery_rate == 0.5
        assert summary.revenue_recovered_cents == Decimal("1000")
        assert summary.total_campaigns_started == 1
        assert summary.total_communications_sent == 2

    def test_empty_range_summary(self, db_session):
        summary = RecoveryAnalyticsService(db_session).get_summary(
            RecoveryAnalyticsFilter(start_date=DAY, end_date=DAY), ADMIN_CALLER
        )
        assert summary.total_failures == 0
        assert summary.recovery_rate == 0.0

    def test_customers_cannot_read(self, db_session, customer):
        with pytest.raises(AccessDeniedError):
            RecoveryAnalyticsService(db_session).get_analytics(
                RecoveryAnalyticsFilter(start_date=DAY, end_date=DAY),
                customer_caller(customer.id),
            )

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            RecoveryAnalyticsFilter(start_date=DAY, end_date=DAY - timedelta(days=1))
