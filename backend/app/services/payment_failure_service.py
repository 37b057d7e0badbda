"""Failed-payment lifecycle and retry scheduling.

Every status change goes through a conditional update on the expected
previous status, so two workers (or a worker and an admin) acting on the same
failure cannot both win. In particular a charge is only sent after this
service has moved the failure to ``retrying`` itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.auth import (
    ROLE_SYSTEM,
    SYSTEM_CALLER,
    Caller,
    require_admin,
    require_customer_access,
    scope_customer_filter,
)
from app.core.config import settings
from app.core.exceptions import (
    InputValidationError,
    InvalidStateError,
    NotFoundError,
    PaymentMethodBlockedError,
    UpstreamError,
)
from app.models.payment_failure import (
    TERMINAL_FAILURE_STATUSES,
    PaymentFailure,
    PaymentFailureStatus,
    ResolutionType,
)
from app.models.shared import as_uuid, utc_now
from app.repositories.customer_repository import CustomerRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.repositories.processed_event_repository import ProcessedEventRepository
from app.schemas.dunning_campaign import DunningCampaignCreate
from app.schemas.payment_failure import (
    PaymentFailedEvent,
    PaymentFailureFilter,
    PaymentSucceededEvent,
    RetryPaymentRequest,
    SweepResult,
)
from app.services.account_state_service import AccountStateService
from app.services.audit_service import AuditService
from app.services.customer_segments import CustomerSegment, get_customer_segment
from app.services.dunning_service import DunningService
from app.services.notifier import Notifier
from app.services.payment_method_health_service import PaymentMethodHealthService
from app.services.payment_processor import ChargeResult, PaymentProcessor, get_payment_processor
from app.services.retry_policy import BackoffPolicy, classify_failure

logger = logging.getLogger(__name__)

PENDING = PaymentFailureStatus.PENDING.value
RETRYING = PaymentFailureStatus.RETRYING.value
RESOLVED = PaymentFailureStatus.RESOLVED.value
ESCALATED = PaymentFailureStatus.ESCALATED.value
ABANDONED = PaymentFailureStatus.ABANDONED.value

UPSTREAM_UNAVAILABLE = "upstream_unavailable"
MISSING_PAYMENT_METHOD = "missing_payment_method"
PROCESSOR_ERROR = "processor_error"

AT_RISK_WINDOW_DAYS = 30
AT_RISK_RECENT_FAILURES = 2


@dataclass
class RecordedFailure:
    failure: PaymentFailure | None
    created: bool
    duplicate: bool = False


@dataclass
class RetryOutcome:
    success: bool
    failure: PaymentFailure
    transaction_id: str | None = None
    error_code: str | None = None


class PaymentFailureService:
    """Tracks payment failures and executes their retries."""

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor | None = None,
        backoff: BackoffPolicy | None = None,
        notifier: Notifier | None = None,
        account_states: AccountStateService | None = None,
        dunning: DunningService | None = None,
    ):
        self.db = db
        self.repo = PaymentFailureRepository(db)
        self.event_repo = ProcessedEventRepository(db)
        self.customer_repo = CustomerRepository(db)
        self.processor = processor or get_payment_processor()
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.account_states = account_states or AccountStateService(db)
        self.dunning = dunning or DunningService(
            db, notifier=notifier, account_states=self.account_states
        )
        self.method_health = PaymentMethodHealthService(db)
        self.audit = AuditService(db)

    def get_failure(self, failure_id: UUID | str, caller: Caller) -> PaymentFailure:
        failure = self.repo.get_by_id(as_uuid(failure_id, "failure_id"))
        if failure is None:
            raise NotFoundError("Payment failure not found")
        require_customer_access(caller, failure.customer_id, "view payment failure")  # type: ignore[arg-type]
        return failure

    def list_failures(self, filters: PaymentFailureFilter, caller: Caller) -> list[PaymentFailure]:
        customer_id = scope_customer_filter(filters.customer_id, caller, "list payment failures")
        return self.repo.get_all(
            skip=filters.skip,
            limit=filters.limit,
            customer_id=customer_id,
            subscription_id=filters.subscription_id,
            status=filters.status,
            order_by=filters.order_by,
        )

    def record_failure(
        self,
        event: PaymentFailedEvent,
        caller: Caller = SYSTEM_CALLER,
        now: datetime | None = None,
    ) -> RecordedFailure:
        """Record a processor failure event.

        A repeated idempotency key returns the failure the first delivery
        produced. An open failure for the same customer and subscription counts
        the event as another failed attempt; otherwise a new failure is created
        and, if it qualifies, a dunning campaign is started.
        """
        require_admin(caller, "record payment failure")
        now = now or utc_now()

        duplicate = self._duplicate_of(event.idempotency_key)
        if duplicate is not None:
            return duplicate
        try:
            processed = self.event_repo.add(
                idempotency_key=event.idempotency_key, event_type="payment_failed"
            )
        except IntegrityError:
            self.db.rollback()
            duplicate = self._duplicate_of(event.idempotency_key)
            if duplicate is None:
                raise
            return duplicate

        if event.payment_method_id:
            self.method_health.record_outcome(
                event.customer_id,
                event.payment_method_id,
                success=False,
                failure_reason=event.failure_code or event.failure_reason,
                now=now,
            )

        open_failure = self.repo.get_open_for(event.customer_id, event.subscription_id)
        if open_failure is not None:
            self.event_repo.link_failure(processed, open_failure.id)  # type: ignore[arg-type]
            open_failure.failure_reason = event.failure_reason  # type: ignore[assignment]
            open_failure.failure_code = event.failure_code  # type: ignore[assignment]
            open_failure.failure_message = event.failure_message  # type: ignore[assignment]
            if event.payment_method_id:
                open_failure.payment_method_id = event.payment_method_id  # type: ignore[assignment]
            self.repo.save(open_failure)
            if open_failure.status == PENDING:
                open_failure = self._register_failed_attempt(
                    open_failure,
                    expected_status=PENDING,
                    count_attempt=True,
                    error_code=event.failure_code,
                    caller=caller,
                    now=now,
                )
            else:
                self.account_states.recalculate(open_failure.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
            return RecordedFailure(failure=open_failure, created=False)

        classification = classify_failure(event.failure_code)
        escalated = classification.max_retry_attempts == 0
        failure = self.repo.create(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            invoice_id=event.invoice_id,
            payment_method_id=event.payment_method_id,
            amount_cents=event.amount_cents,
            currency=event.currency.upper(),
            failure_reason=event.failure_reason,
            failure_code=event.failure_code,
            failure_message=event.failure_message,
            classification=classification.classification,
            severity=classification.severity,
            status=ESCALATED if escalated else PENDING,
            retry_count=0,
            max_retry_attempts=classification.max_retry_attempts,
            next_retry_at=(
                self._abandon_deadline(now) if escalated else now + self.backoff.delay(0)
            ),
            metadata_=dict(event.metadata),
            created_at=now,
        )
        self.event_repo.link_failure(processed, failure.id)  # type: ignore[arg-type]
        self.repo.save(failure)
        self.audit.log_create(
            "payment_failure",
            failure.id,  # type: ignore[arg-type]
            caller=caller,
            data={
                "customer_id": failure.customer_id,
                "amount_cents": failure.amount_cents,
                "failure_code": failure.failure_code,
                "classification": failure.classification,
                "status": failure.status,
            },
        )
        logger.info(
            "Recorded %s payment failure %s for customer %s (%s)",
            failure.classification,
            failure.id,
            failure.customer_id,
            failure.failure_code or failure.failure_reason,
        )

        if failure.amount_cents >= settings.DUNNING_MIN_AMOUNT_CENTS:
            self.dunning.create_campaign(self._campaign_for(failure, now), SYSTEM_CALLER, now)
            if escalated:
                self.dunning.on_failure_escalated(failure, now)

        self.account_states.recalculate(failure.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
        return RecordedFailure(failure=self.repo.refresh(failure), created=True)

    def record_payment_success(
        self,
        event: PaymentSucceededEvent,
        caller: Caller = SYSTEM_CALLER,
        now: datetime | None = None,
    ) -> PaymentFailure | None:
        """Resolve the open failure for the customer and subscription, if any."""
        require_admin(caller, "record payment success")
        now = now or utc_now()

        existing = self.event_repo.get_by_key(event.idempotency_key)
        if existing is not None:
            if existing.payment_failure_id is None:
                return None
            return self.repo.get_by_id(existing.payment_failure_id)  # type: ignore[arg-type]
        try:
            processed = self.event_repo.add(
                idempotency_key=event.idempotency_key, event_type="payment_succeeded"
            )
        except IntegrityError:
            self.db.rollback()
            return None

        failure = self.repo.get_open_for(event.customer_id, event.subscription_id)
        if failure is None:
            self.db.commit()
            return None
        self.event_repo.link_failure(processed, failure.id)  # type: ignore[arg-type]
        self.db.commit()
        try:
            return self._resolve(
                failure,
                expected_status=str(failure.status),
                transaction_id=event.transaction_id,
                caller=caller,
                now=now,
            )
        except InvalidStateError as exc:
            return exc.current

    def retry_payment(
        self,
        request: RetryPaymentRequest,
        caller: Caller,
        now: datetime | None = None,
    ) -> RetryOutcome:
        """Charge the failure's payment method once.

        Only the owning customer or an admin may retry, and only an admin may
        retry without counting the attempt. The charge is sent after the
        failure has been claimed for this call; a retry that lost the claim, or
        one against a resolved or in-flight failure, raises InvalidStateError
        without charging.
        """
        now = now or utc_now()
        failure = self.repo.get_by_id(as_uuid(request.failure_id, "failure_id"))
        if failure is None:
            raise NotFoundError("Payment failure not found")
        require_customer_access(caller, failure.customer_id, "retry payment")  # type: ignore[arg-type]
        if request.skip_retry_count:
            require_admin(caller, "retry payment without counting the attempt")

        if failure.status in TERMINAL_FAILURE_STATUSES or failure.status == RETRYING:
            raise InvalidStateError(f"Payment failure is {failure.status}", current=failure)
        if failure.retry_count >= failure.max_retry_attempts and not request.skip_retry_count:
            raise InvalidStateError("Maximum retry attempts reached", current=failure)

        payment_method_id = request.payment_method_id or failure.payment_method_id
        if not payment_method_id:
            raise InputValidationError("A payment method is required to retry this payment")

        # explicit retries by the customer or an admin go through regardless
        if caller.role == ROLE_SYSTEM:
            blocked_until = self.method_health.blocked_until(
                failure.customer_id, payment_method_id, now  # type: ignore[arg-type]
            )
            if blocked_until is not None:
                raise PaymentMethodBlockedError(
                    f"Payment method is blocked until {blocked_until.isoformat()}",
                    current=failure,
                    blocked_until=blocked_until,
                )

        pre_status = str(failure.status)
        claimed = self.repo.compare_and_set(
            failure.id,  # type: ignore[arg-type]
            pre_status,
            {
                "status": RETRYING,
                "last_retry_at": now,
                "payment_method_id": payment_method_id,
            },
        )
        if not claimed:
            failure = self.repo.refresh(failure)
            raise InvalidStateError("Payment failure is already being retried", current=failure)

        idempotency_key = f"retry_{failure.id}_{int(failure.retry_count) + 1}"
        if request.skip_retry_count:
            idempotency_key = f"{idempotency_key}_manual_{int(now.timestamp())}"

        try:
            result = self.processor.charge_payment(
                payment_method_id,
                failure.amount_cents,  # type: ignore[arg-type]
                str(failure.currency),
                idempotency_key,
            )
        except UpstreamError as exc:
            logger.warning("Retry of payment failure %s hit an upstream error: %s", failure.id, exc)
            result = ChargeResult(success=False, error_code=UPSTREAM_UNAVAILABLE)
        except Exception:
            # hand the failure back so the next sweep can pick it up
            self.repo.compare_and_set(failure.id, RETRYING, {"status": pre_status})  # type: ignore[arg-type]
            raise

        if result.error_code != UPSTREAM_UNAVAILABLE:
            self.method_health.record_outcome(
                failure.customer_id,  # type: ignore[arg-type]
                payment_method_id,
                success=result.success,
                failure_reason=result.error_code,
                now=now,
            )

        failure = self.repo.refresh(failure)
        if result.success:
            failure = self._resolve(
                failure,
                expected_status=RETRYING,
                transaction_id=result.transaction_id,
                caller=caller,
                now=now,
            )
            return RetryOutcome(success=True, failure=failure, transaction_id=result.transaction_id)

        failure = self._register_failed_attempt(
            failure,
            expected_status=RETRYING,
            count_attempt=not request.skip_retry_count,
            error_code=result.error_code,
            caller=caller,
            now=now,
            pre_status=pre_status,
            transaction_id=result.transaction_id,
        )
        return RetryOutcome(
            success=False,
            failure=failure,
            transaction_id=result.transaction_id,
            error_code=result.error_code,
        )

    def abandon_failure(
        self,
        failure_id: UUID | str,
        reason: str,
        caller: Caller,
        now: datetime | None = None,
    ) -> PaymentFailure:
        """Give up on a pending or escalated failure."""
        require_admin(caller, "abandon payment failure")
        now = now or utc_now()
        failure = self.repo.get_by_id(as_uuid(failure_id, "failure_id"))
        if failure is None:
            raise NotFoundError("Payment failure not found")
        if failure.status not in (PENDING, ESCALATED):
            raise InvalidStateError(f"Cannot abandon a {failure.status} failure", current=failure)

        previous = str(failure.status)
        resolution = (
            ResolutionType.MAX_RETRIES_EXCEEDED.value
            if previous == ESCALATED
            else ResolutionType.MANUAL.value
        )
        if not self.repo.compare_and_set(
            failure.id,  # type: ignore[arg-type]
            previous,
            {"status": ABANDONED, "next_retry_at": None, "resolution_type": resolution},
        ):
            failure = self.repo.refresh(failure)
            raise InvalidStateError("Payment failure changed concurrently", current=failure)

        failure = self.repo.refresh(failure)
        self.audit.log_status_change(
            "payment_failure", failure.id, previous, ABANDONED, caller=caller, reason=reason  # type: ignore[arg-type]
        )
        logger.info("Abandoned payment failure %s (%s)", failure.id, reason)
        self.dunning.on_failure_abandoned(failure, SYSTEM_CALLER, now)
        self.account_states.recalculate(failure.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
        return failure

    def reset_failure(
        self,
        failure_id: UUID | str,
        caller: Caller,
        reason: str,
        now: datetime | None = None,
    ) -> PaymentFailure:
        """Admin reset of an escalated or abandoned failure to a fresh retry cycle."""
        require_admin(caller, "reset payment failure")
        now = now or utc_now()
        failure = self.repo.get_by_id(as_uuid(failure_id, "failure_id"))
        if failure is None:
            raise NotFoundError("Payment failure not found")
        if failure.status not in (ESCALATED, ABANDONED):
            raise InvalidStateError(f"Cannot reset a {failure.status} failure", current=failure)

        previous = str(failure.status)
        max_attempts = int(failure.max_retry_attempts) or settings.DEFAULT_MAX_RETRY_ATTEMPTS
        if not self.repo.compare_and_set(
            failure.id,  # type: ignore[arg-type]
            previous,
            {
                "status": PENDING,
                "retry_count": 0,
                "max_retry_attempts": max_attempts,
                "next_retry_at": now + self.backoff.delay(0),
                "resolution_type": None,
            },
        ):
            failure = self.repo.refresh(failure)
            raise InvalidStateError("Payment failure changed concurrently", current=failure)

        failure = self.repo.refresh(failure)
        self.audit.log_status_change(
            "payment_failure", failure.id, previous, PENDING, caller=caller, reason=reason  # type: ignore[arg-type]
        )
        logger.info("Reset payment failure %s from %s (%s)", failure.id, previous, reason)
        self.account_states.recalculate(failure.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
        return failure

    def process_due_failures(
        self, now: datetime | None = None, limit: int | None = None
    ) -> SweepResult:
        """Retry pending failures that are due and abandon expired escalations."""
        now = now or utc_now()
        batch = limit or settings.SWEEP_BATCH_SIZE
        result = SweepResult()

        for failure in self.repo.get_due_for_retry(now, batch):
            result.processed += 1
            try:
                outcome = self.retry_payment(
                    RetryPaymentRequest(failure_id=failure.id), SYSTEM_CALLER, now  # type: ignore[arg-type]
                )
            except PaymentMethodBlockedError as exc:
                logger.info("Deferring payment failure %s: %s", failure.id, exc.message)
                self.repo.compare_and_set(
                    failure.id, PENDING, {"next_retry_at": exc.blocked_until}  # type: ignore[arg-type]
                )
                result.skipped += 1
                continue
            except InvalidStateError as exc:
                logger.info("Skipping payment failure %s: %s", failure.id, exc.message)
                result.skipped += 1
                continue
            except InputValidationError:
                if self._count_sweep_error(failure, MISSING_PAYMENT_METHOD, now):
                    result.failed += 1
                else:
                    result.skipped += 1
                continue
            except Exception:
                # one broken failure must not stall the rest of the batch
                logger.exception("Retry of payment failure %s raised unexpectedly", failure.id)
                self.db.rollback()
                self._count_sweep_error(failure, PROCESSOR_ERROR, now)
                result.failed += 1
                continue
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1

        for failure in self.repo.get_due_for_abandonment(now, batch):
            try:
                self.abandon_failure(failure.id, "retry window expired", SYSTEM_CALLER, now)  # type: ignore[arg-type]
            except InvalidStateError:
                result.skipped += 1
                continue
            result.abandoned += 1

        if result.processed or result.abandoned:
            logger.info(
                "Retry sweep: %d processed, %d succeeded, %d failed, %d skipped, %d abandoned",
                result.processed,
                result.succeeded,
                result.failed,
                result.skipped,
                result.abandoned,
            )
        return result

    def _count_sweep_error(self, failure: PaymentFailure, error_code: str, now: datetime) -> bool:
        """Consume a retry attempt for a due failure the sweep could not charge."""
        failure = self.repo.refresh(failure)
        if failure.status != PENDING:
            return False
        try:
            self._register_failed_attempt(
                failure,
                expected_status=PENDING,
                count_attempt=True,
                error_code=error_code,
                caller=SYSTEM_CALLER,
                now=now,
            )
        except InvalidStateError:
            return False
        return True

    def _duplicate_of(self, idempotency_key: str) -> RecordedFailure | None:
        existing = self.event_repo.get_by_key(idempotency_key)
        if existing is None:
            return None
        failure = (
            self.repo.get_by_id(existing.payment_failure_id)  # type: ignore[arg-type]
            if existing.payment_failure_id is not None
            else None
        )
        logger.info("Ignoring duplicate payment event %s", idempotency_key)
        return RecordedFailure(failure=failure, created=False, duplicate=True)

    def _resolve(
        self,
        failure: PaymentFailure,
        expected_status: str,
        transaction_id: str | None,
        caller: Caller,
        now: datetime,
    ) -> PaymentFailure:
        if not self.repo.compare_and_set(
            failure.id,  # type: ignore[arg-type]
            expected_status,
            {
                "status": RESOLVED,
                "resolution_type": ResolutionType.PAYMENT_SUCCEEDED.value,
                "resolved_at": now,
                "next_retry_at": None,
                "last_transaction_id": transaction_id,
            },
        ):
            failure = self.repo.refresh(failure)
            raise InvalidStateError("Payment failure changed concurrently", current=failure)

        failure = self.repo.refresh(failure)
        self.audit.log_status_change(
            "payment_failure",
            failure.id,  # type: ignore[arg-type]
            expected_status,
            RESOLVED,
            caller=caller,
            reason=ResolutionType.PAYMENT_SUCCEEDED.value,
        )
        logger.info("Payment failure %s resolved", failure.id)
        self.dunning.on_failure_resolved(failure, SYSTEM_CALLER, now)
        self.account_states.recalculate(failure.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
        return failure

    def _register_failed_attempt(
        self,
        failure: PaymentFailure,
        expected_status: str,
        count_attempt: bool,
        error_code: str | None,
        caller: Caller,
        now: datetime,
        pre_status: str | None = None,
        transaction_id: str | None = None,
    ) -> PaymentFailure:
        """Count a failed charge, reschedule it, and escalate when out of attempts."""
        pre_status = pre_status or expected_status
        retry_count = int(failure.retry_count) + (1 if count_attempt else 0)
        max_attempts = int(failure.max_retry_attempts)
        metadata = {**(failure.metadata_ or {}), "last_error_code": error_code}

        values: dict[str, Any] = {
            "retry_count": retry_count,
            "last_retry_at": now,
            "metadata_": metadata,
        }
        if transaction_id:
            values["last_transaction_id"] = transaction_id

        newly_escalated = False
        if pre_status == ESCALATED:
            # admin retry of an escalated failure keeps the abandonment deadline
            values["status"] = ESCALATED
        elif retry_count >= max_attempts:
            values["status"] = ESCALATED
            values["next_retry_at"] = self._abandon_deadline(now)
            newly_escalated = True
        else:
            values["status"] = PENDING
            values["next_retry_at"] = now + self.backoff.delay(retry_count)

        if not self.repo.compare_and_set(failure.id, expected_status, values):  # type: ignore[arg-type]
            failure = self.repo.refresh(failure)
            raise InvalidStateError("Payment failure changed concurrently", current=failure)

        failure = self.repo.refresh(failure)
        self.audit.log_update(
            "payment_failure",
            failure.id,  # type: ignore[arg-type]
            caller=caller,
            old_data={"status": pre_status, "retry_count": retry_count - (1 if count_attempt else 0)},
            new_data={"status": failure.status, "retry_count": failure.retry_count},
            reason=error_code,
        )
        if newly_escalated:
            logger.info(
                "Payment failure %s escalated after %d attempts", failure.id, failure.retry_count
            )
            self.dunning.on_failure_escalated(failure, now)
        self.account_states.recalculate(failure.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
        return failure

    def _abandon_deadline(self, now: datetime) -> datetime:
        return now + timedelta(hours=settings.ESCALATION_ABANDON_AFTER_HOURS)

    def _campaign_for(self, failure: PaymentFailure, now: datetime) -> DunningCampaignCreate:
        """Pick campaign type and channels from the customer's segment and the failure severity."""
        customer_id: UUID = failure.customer_id  # type: ignore[assignment]
        segment = get_customer_segment(self.db, customer_id, now)
        recent = self.repo.count_since(customer_id, now - timedelta(days=AT_RISK_WINDOW_DAYS))
        if segment == CustomerSegment.HIGH_VALUE.value:
            campaign_type = "high_value"
        elif recent > AT_RISK_RECENT_FAILURES:
            campaign_type = "at_risk"
        else:
            campaign_type = "standard"

        channels = ["email"]
        customer = self.customer_repo.get_by_id(customer_id)
        if customer is not None and customer.phone and failure.severity in ("high", "critical"):
            channels.append("sms")
        if failure.severity == "high" or campaign_type == "at_risk":
            channels.append("in_app")

        return DunningCampaignCreate(
            customer_id=customer_id,
            payment_failure_id=failure.id,  # type: ignore[arg-type]
            campaign_type=campaign_type,
            communication_channels=channels,
        )
