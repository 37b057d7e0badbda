"""Tests for PaymentFailureService - recording, retrying and closing failures."""

import uuid
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.orm import Session

from app.core.auth import SYSTEM_CALLER
from app.core.exceptions import (
    AccessDeniedError,
    InputValidationError,
    InvalidStateError,
    NotFoundError,
    UpstreamError,
)
from app.models.audit_log import AuditLog
from app.models.dunning_campaign import DunningCampaign
from app.models.payment_failure import PaymentFailure
from app.models.processed_event import ProcessedEvent
from app.models.shared import ensure_utc, utc_now
from app.repositories.account_state_repository import AccountStateRepository
from app.schemas.payment_failure import (
    PaymentFailedEvent,
    PaymentFailureFilter,
    PaymentSucceededEvent,
    RetryPaymentRequest,
)
from app.services.payment_failure_service import PaymentFailureService
from app.services.payment_processor import ChargeResult, HttpPaymentProcessor
from app.services.retry_policy import BackoffPolicy
from tests.conftest import (
    ADMIN_CALLER,
    FakeNotifier,
    FakeProcessor,
    create_customer,
    customer_caller,
)

SUBSCRIPTION_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")


def _backoff() -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=timedelta(hours=1),
        max_delay=timedelta(hours=72),
        jitter_max=timedelta(minutes=30),
        rng=lambda low, high: 0.0,
    )


def _service(db: Session, *results) -> PaymentFailureService:
    return PaymentFailureService(
        db, processor=FakeProcessor(*results), backoff=_backoff(), notifier=FakeNotifier()
    )


def _event(customer_id, key="evt-1", code="insufficient_funds", **overrides):
    fields = {
        "idempotency_key": key,
        "customer_id": customer_id,
        "subscription_id": SUBSCRIPTION_ID,
        "payment_method_id": "pm_123",
        "amount_cents": Decimal("5000"),
        "failure_reason": "Card declined",
        "failure_code": code,
    }
    fields.update(overrides)
    return PaymentFailedEvent(**fields)


@pytest.fixture
def customer(db_session: Session):
    return create_customer(db_session)


class TestRecordFailure:
    def test_creates_pending_failure_with_first_retry_scheduled(self, db_session, customer):
        now = utc_now()
        result = _service(db_session).record_failure(_event(customer.id), now=now)

        assert result.created is True
        assert result.duplicate is False
        failure = result.failure
        assert failure.status == "pending"
        assert failure.classification == "temporary"
        assert failure.severity == "medium"
        assert failure.retry_count == 0
        assert failure.max_retry_attempts == 3
        assert ensure_utc(failure.next_retry_at) == now + timedelta(hours=1)

    def test_starts_standard_campaign(self, db_session, customer):
        result = _service(db_session).record_failure(_event(customer.id))

        campaign = db_session.query(DunningCampaign).one()
        assert campaign.payment_failure_id == result.failure.id
        assert campaign.campaign_type == "standard"
        assert campaign.total_steps == 5
        assert campaign.communication_channels == ["email"]
        assert campaign.personalization_data["amount"] == "50.00 USD"

    def test_moves_account_into_grace_period(self, db_session, customer):
        _service(db_session).record_failure(_event(customer.id))

        current = AccountStateRepository(db_session).get_current(customer.id)
        assert current.state == "grace_period"
        assert current.grace_period_end is not None
        assert current.feature_restrictions == []

    def test_duplicate_event_returns_original(self, db_session, customer):
        service = _service(db_session)
        first = service.record_failure(_event(customer.id))
        again = service.record_failure(_event(customer.id))

        assert again.duplicate is True
        assert again.created is False
        assert again.failure.id == first.failure.id
        assert db_session.query(PaymentFailure).count() == 1
        assert db_session.query(ProcessedEvent).count() == 1

    def test_second_event_for_open_failure_counts_an_attempt(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        first = service.record_failure(_event(customer.id), now=now)
        second = service.record_failure(
            _event(customer.id, key="evt-2", code="card_declined"), now=now
        )

        assert second.created is False
        assert second.failure.id == first.failure.id
        assert second.failure.retry_count == 1
        assert second.failure.failure_code == "card_declined"
        assert ensure_utc(second.failure.next_retry_at) == now + timedelta(hours=2)
        assert db_session.query(PaymentFailure).count() == 1

    def test_other_subscription_gets_its_own_failure(self, db_session, customer):
        service = _service(db_session)
        service.record_failure(_event(customer.id))
        other = service.record_failure(
            _event(customer.id, key="evt-2", subscription_id=uuid.uuid4())
        )
        assert other.created is True
        assert db_session.query(PaymentFailure).count() == 2

    def test_permanent_failure_is_escalated_immediately(self, db_session, customer):
        now = utc_now()
        result = _service(db_session).record_failure(
            _event(customer.id, code="fraudulent"), now=now
        )

        failure = result.failure
        assert failure.status == "escalated"
        assert failure.severity == "critical"
        assert failure.max_retry_attempts == 0
        assert ensure_utc(failure.next_retry_at) == now + timedelta(hours=168)

        campaign = db_session.query(DunningCampaign).one()
        assert "escalated_at" in campaign.metadata_

        history = AccountStateRepository(db_session).get_history(customer.id)
        assert [row.state for row in history] == ["restricted", "grace_period", "active"]

    def test_channels_follow_severity_and_phone(self, db_session):
        customer = create_customer(db_session, external_id="cust-phone", phone="+15550100")
        _service(db_session).record_failure(_event(customer.id, code="expired_card"))

        campaign = db_session.query(DunningCampaign).one()
        assert campaign.communication_channels == ["email", "sms", "in_app"]

    def test_high_value_customer_gets_high_value_campaign(self, db_session):
        customer = create_customer(
            db_session,
            external_id="cust-big",
            monthly_recurring_cents=50_000,
            created_at=utc_now() - timedelta(days=400),
        )
        _service(db_session).record_failure(_event(customer.id))

        assert db_session.query(DunningCampaign).one().campaign_type == "high_value"

    def test_repeat_failures_get_at_risk_campaign(self, db_session, customer):
        service = _service(db_session)
        for i in range(3):
            service.record_failure(
                _event(customer.id, key=f"evt-{i}", subscription_id=uuid.uuid4())
            )
        types = [c.campaign_type for c in db_session.query(DunningCampaign).all()]
        assert types.count("at_risk") == 1

    def test_requires_admin(self, db_session, customer):
        with pytest.raises(AccessDeniedError):
            _service(db_session).record_failure(
                _event(customer.id), caller=customer_caller(customer.id)
            )
        assert db_session.query(PaymentFailure).count() == 0

    def test_audit_entry_written(self, db_session, customer):
        result = _service(db_session).record_failure(_event(customer.id))
        entry = (
            db_session.query(AuditLog)
            .filter(AuditLog.resource_type == "payment_failure", AuditLog.action == "created")
            .one()
        )
        assert entry.resource_id == result.failure.id
        assert entry.actor_type == "system"


class TestRetryPayment:
    def test_successful_retry_resolves_everything(self, db_session, customer):
        service = _service(db_session, ChargeResult(success=True, transaction_id="txn_1"))
        failure = service.record_failure(_event(customer.id)).failure

        outcome = service.retry_payment(
            RetryPaymentRequest(failure_id=failure.id), customer_caller(customer.id)
        )

        assert outcome.success is True
        assert outcome.transaction_id == "txn_1"
        assert outcome.failure.status == "resolved"
        assert outcome.failure.resolution_type == "payment_succeeded"
        assert outcome.failure.last_transaction_id == "txn_1"
        assert outcome.failure.next_retry_at is None
        assert service.processor.charges == [
            ("pm_123", Decimal("5000.0000"), "USD", f"retry_{failure.id}_1")
        ]

        campaign = db_session.query(DunningCampaign).one()
        assert campaign.status == "completed"
        assert campaign.completion_reason == "payment_resolved"
        assert AccountStateRepository(db_session).get_current(customer.id).state == "active"

    def test_declined_retry_reschedules(self, db_session, customer):
        now = utc_now()
        service = _service(db_session, ChargeResult(success=False, error_code="card_declined"))
        failure = service.record_failure(_event(customer.id), now=now).failure

        outcome = service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now)

        assert outcome.success is False
        assert outcome.error_code == "card_declined"
        assert outcome.failure.status == "pending"
        assert outcome.failure.retry_count == 1
        assert outcome.failure.metadata_["last_error_code"] == "card_declined"
        assert ensure_utc(outcome.failure.next_retry_at) == now + timedelta(hours=2)

    def test_third_attempt_waits_four_hours(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id), now=now).failure
        service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now)

        outcome = service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now)
        assert outcome.failure.retry_count == 2
        assert ensure_utc(outcome.failure.next_retry_at) == now + timedelta(hours=4)

    def test_last_attempt_escalates(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id), now=now).failure
        for _ in range(3):
            outcome = service.retry_payment(
                RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now
            )

        assert outcome.failure.status == "escalated"
        assert outcome.failure.retry_count == 3
        assert ensure_utc(outcome.failure.next_retry_at) == now + timedelta(hours=168)
        assert AccountStateRepository(db_session).get_current(customer.id).state == "restricted"

        with pytest.raises(InvalidStateError, match="Maximum retry attempts"):
            service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now)
        assert len(service.processor.charges) == 3

    def test_resolved_failure_is_not_charged_again(self, db_session, customer):
        service = _service(db_session, ChargeResult(success=True, transaction_id="txn_1"))
        failure = service.record_failure(_event(customer.id)).failure
        service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)

        with pytest.raises(InvalidStateError) as exc_info:
            service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)
        assert exc_info.value.current.status == "resolved"
        assert len(service.processor.charges) == 1

    def test_in_flight_failure_is_rejected(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure
        service.repo.compare_and_set(failure.id, "pending", {"status": "retrying"})

        with pytest.raises(InvalidStateError):
            service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)
        assert service.processor.charges == []

    def test_other_customer_is_denied(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure

        with pytest.raises(AccessDeniedError):
            service.retry_payment(
                RetryPaymentRequest(failure_id=failure.id), customer_caller(uuid.uuid4())
            )
        assert service.processor.charges == []

    def test_customer_cannot_skip_retry_count(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure

        with pytest.raises(AccessDeniedError):
            service.retry_payment(
                RetryPaymentRequest(failure_id=failure.id, skip_retry_count=True),
                customer_caller(customer.id),
            )

    def test_admin_manual_retry_does_not_count(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure

        outcome = service.retry_payment(
            RetryPaymentRequest(failure_id=failure.id, skip_retry_count=True), ADMIN_CALLER
        )
        assert outcome.failure.retry_count == 0
        assert "_manual_" in service.processor.charges[0][3]

    def test_missing_payment_method(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id, payment_method_id=None)).failure

        with pytest.raises(InputValidationError):
            service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)
        assert service.repo.get_by_id(failure.id).status == "pending"

    def test_payment_method_override_is_stored(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id, payment_method_id=None)).failure

        service.retry_payment(
            RetryPaymentRequest(failure_id=failure.id, payment_method_id="pm_new"), ADMIN_CALLER
        )
        assert service.repo.get_by_id(failure.id).payment_method_id == "pm_new"

    def test_upstream_outage_counts_as_failed_attempt(self, db_session, customer):
        service = _service(db_session, UpstreamError("gateway down"))
        failure = service.record_failure(_event(customer.id)).failure

        outcome = service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)
        assert outcome.success is False
        assert outcome.error_code == "upstream_unavailable"
        assert outcome.failure.retry_count == 1

    def test_unexpected_error_releases_the_claim(self, db_session, customer):
        service = _service(db_session, RuntimeError("boom"))
        failure = service.record_failure(_event(customer.id)).failure

        with pytest.raises(RuntimeError):
            service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)
        reloaded = service.repo.refresh(service.repo.get_by_id(failure.id))
        assert reloaded.status == "pending"
        assert reloaded.retry_count == 0

    def test_unknown_failure(self, db_session):
        with pytest.raises(NotFoundError):
            _service(db_session).retry_payment(
                RetryPaymentRequest(failure_id=uuid.uuid4()), ADMIN_CALLER
            )


class TestPaymentSuccessEvent:
    def test_resolves_open_failure(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure

        resolved = service.record_payment_success(
            PaymentSucceededEvent(
                idempotency_key="ok-1",
                customer_id=customer.id,
                subscription_id=SUBSCRIPTION_ID,
                transaction_id="txn_external",
            )
        )
        assert resolved.id == failure.id
        assert resolved.status == "resolved"
        assert resolved.last_transaction_id == "txn_external"
        assert AccountStateRepository(db_session).get_current(customer.id).state == "active"

    def test_redelivery_is_a_no_op(self, db_session, customer):
        service = _service(db_session)
        service.record_failure(_event(customer.id))
        event = PaymentSucceededEvent(
            idempotency_key="ok-1", customer_id=customer.id, subscription_id=SUBSCRIPTION_ID
        )
        first = service.record_payment_success(event)
        again = service.record_payment_success(event)
        assert again.id == first.id
        assert db_session.query(AuditLog).filter(
            AuditLog.resource_type == "payment_failure", AuditLog.action == "status_changed"
        ).count() == 1

    def test_nothing_open(self, db_session, customer):
        result = _service(db_session).record_payment_success(
            PaymentSucceededEvent(idempotency_key="ok-1", customer_id=customer.id)
        )
        assert result is None


class TestAbandonAndReset:
    def test_abandon_requires_admin(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure
        with pytest.raises(AccessDeniedError):
            service.abandon_failure(failure.id, "give up", customer_caller(customer.id))
        assert service.repo.get_by_id(failure.id).status == "pending"

    def test_abandon_cancels_campaign_and_suspends(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure

        abandoned = service.abandon_failure(failure.id, "customer churned", ADMIN_CALLER)

        assert abandoned.status == "abandoned"
        assert abandoned.resolution_type == "manual"
        campaign = db_session.query(DunningCampaign).one()
        assert campaign.status == "canceled"
        assert campaign.completion_reason == "payment_abandoned"
        current = AccountStateRepository(db_session).get_current(customer.id)
        assert current.state == "suspended"
        assert current.suspension_date is not None

    def test_cannot_abandon_resolved(self, db_session, customer):
        service = _service(db_session, ChargeResult(success=True, transaction_id="txn_1"))
        failure = service.record_failure(_event(customer.id)).failure
        service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER)
        with pytest.raises(InvalidStateError):
            service.abandon_failure(failure.id, "late", ADMIN_CALLER)

    def test_reset_escalated_failure(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id, code="fraudulent"), now=now).failure

        reset = service.reset_failure(failure.id, ADMIN_CALLER, "verified by support", now)

        assert reset.status == "pending"
        assert reset.retry_count == 0
        assert reset.max_retry_attempts == 3
        assert ensure_utc(reset.next_retry_at) == now + timedelta(hours=1)

    def test_reset_pending_rejected(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure
        with pytest.raises(InvalidStateError):
            service.reset_failure(failure.id, ADMIN_CALLER, "why")


class TestSweep:
    def test_retries_due_failures(self, db_session, customer):
        now = utc_now()
        service = _service(db_session, ChargeResult(success=True, transaction_id="txn_1"))
        due = service.record_failure(_event(customer.id), now=now - timedelta(hours=2)).failure
        service.record_failure(
            _event(customer.id, key="evt-later", subscription_id=uuid.uuid4()), now=now
        )

        result = service.process_due_failures(now=now)

        assert result.processed == 1
        assert result.succeeded == 1
        assert service.repo.get_by_id(due.id).status == "resolved"

    def test_due_failure_without_payment_method(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(
            _event(customer.id, payment_method_id=None), now=now - timedelta(hours=2)
        ).failure

        result = service.process_due_failures(now=now)

        assert result.failed == 1
        reloaded = service.repo.get_by_id(failure.id)
        assert reloaded.retry_count == 1
        assert reloaded.metadata_["last_error_code"] == "missing_payment_method"
        assert service.processor.charges == []

    def test_unexpected_error_does_not_stall_the_batch(self, db_session, customer):
        now = utc_now()
        service = _service(
            db_session, RuntimeError("boom"), ChargeResult(success=True, transaction_id="txn_2")
        )
        broken = service.record_failure(_event(customer.id), now=now - timedelta(hours=3)).failure
        healthy = service.record_failure(
            _event(customer.id, key="evt-2", subscription_id=uuid.uuid4()),
            now=now - timedelta(hours=2),
        ).failure

        result = service.process_due_failures(now=now)

        assert result.processed == 2
        assert result.failed == 1
        assert result.succeeded == 1
        assert service.repo.get_by_id(healthy.id).status == "resolved"
        reloaded = service.repo.get_by_id(broken.id)
        assert reloaded.status == "pending"
        assert reloaded.retry_count == 1
        assert reloaded.metadata_["last_error_code"] == "processor_error"
        assert ensure_utc(reloaded.next_retry_at) > now

        # rescheduled, so the next run does not pick it up again straight away
        assert service.process_due_failures(now=now).processed == 0

    def test_unreadable_gateway_decline_counts_an_attempt(self, db_session, customer):
        now = utc_now()
        transport = httpx.MockTransport(
            lambda request: httpx.Response(402, text="<html>Payment Required</html>")
        )
        processor = HttpPaymentProcessor(
            base_url="https://gateway.test", api_key="sk_test", retries=0, transport=transport
        )
        service = PaymentFailureService(
            db_session, processor=processor, backoff=_backoff(), notifier=FakeNotifier()
        )
        first = service.record_failure(_event(customer.id), now=now - timedelta(hours=3)).failure
        second = service.record_failure(
            _event(
                customer.id, key="evt-2", subscription_id=uuid.uuid4(), payment_method_id="pm_456"
            ),
            now=now - timedelta(hours=2),
        ).failure

        result = service.process_due_failures(now=now)

        assert result.processed == 2
        assert result.failed == 2
        for failure in (first, second):
            reloaded = service.repo.get_by_id(failure.id)
            assert reloaded.status == "pending"
            assert reloaded.retry_count == 1
            assert reloaded.metadata_["last_error_code"] == "card_declined"

    def test_abandons_expired_escalations(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(
            _event(customer.id, code="stolen_card"), now=now - timedelta(days=8)
        ).failure

        result = service.process_due_failures(now=now)

        assert result.abandoned == 1
        reloaded = service.repo.get_by_id(failure.id)
        assert reloaded.status == "abandoned"
        assert reloaded.resolution_type == "max_retries_exceeded"


class TestPaymentMethodHealth:
    def _block(self, service, customer, now):
        for _ in range(2):
            service.method_health.record_outcome(
                customer.id, "pm_123", success=False, failure_reason="card_declined", now=now
            )
        return service.method_health.blocked_until(customer.id, "pm_123", now)

    def test_outcomes_are_recorded_per_card(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id), now=now).failure

        service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now)

        [health] = service.method_health.list_for_customer(customer.id, ADMIN_CALLER)
        assert health.payment_method_id == "pm_123"
        assert health.failure_count == 2
        assert health.success_count == 0
        assert health.common_failure_reasons == ["insufficient_funds", "card_declined"]

    def test_upstream_outage_is_not_held_against_the_card(self, db_session, customer):
        now = utc_now()
        service = _service(db_session, UpstreamError("processor down"))
        failure = service.record_failure(_event(customer.id), now=now).failure

        service.retry_payment(RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now)

        [health] = service.method_health.list_for_customer(customer.id, ADMIN_CALLER)
        assert health.failure_count == 1

    def test_sweep_defers_failure_on_blocked_card(self, db_session, customer):
        now = utc_now()
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id), now=now - timedelta(hours=2)).failure
        blocked_until = self._block(service, customer, now)
        assert blocked_until is not None

        result = service.process_due_failures(now=now)

        assert result.processed == 1
        assert result.skipped == 1
        assert service.processor.charges == []
        reloaded = service.repo.get_by_id(failure.id)
        assert reloaded.status == "pending"
        assert reloaded.retry_count == 0
        assert ensure_utc(reloaded.next_retry_at) == blocked_until

    def test_explicit_retry_ignores_block_and_success_clears_it(self, db_session, customer):
        now = utc_now()
        service = _service(db_session, ChargeResult(success=True, transaction_id="txn_1"))
        failure = service.record_failure(_event(customer.id), now=now).failure
        self._block(service, customer, now)

        outcome = service.retry_payment(
            RetryPaymentRequest(failure_id=failure.id), ADMIN_CALLER, now
        )

        assert outcome.success is True
        assert service.method_health.blocked_until(customer.id, "pm_123", now) is None


class TestQueries:
    def test_customer_sees_only_own_failures(self, db_session, customer):
        other = create_customer(db_session, external_id="cust-other")
        service = _service(db_session)
        service.record_failure(_event(customer.id))
        service.record_failure(_event(other.id, key="evt-other"))

        mine = service.list_failures(PaymentFailureFilter(), customer_caller(customer.id))
        assert [f.customer_id for f in mine] == [customer.id]
        assert len(service.list_failures(PaymentFailureFilter(), SYSTEM_CALLER)) == 2

        with pytest.raises(AccessDeniedError):
            service.list_failures(
                PaymentFailureFilter(customer_id=other.id), customer_caller(customer.id)
            )

    def test_get_failure_access(self, db_session, customer):
        service = _service(db_session)
        failure = service.record_failure(_event(customer.id)).failure
        assert service.get_failure(failure.id, customer_caller(customer.id)).id == failure.id
        with pytest.raises(AccessDeniedError):
            service.get_failure(failure.id, customer_caller(uuid.uuid4()))
        with pytest.raises(InputValidationError):
            service.get_failure("not-a-uuid", ADMIN_CALLER)
