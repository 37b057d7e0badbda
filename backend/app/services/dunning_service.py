"""Dunning service: multi-step customer outreach for open payment failures."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import (
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
    UpstreamError,
)
from app.models.dunning_campaign import (
    OPEN_CAMPAIGN_STATUSES,
    CompletionReason,
    DunningCampaign,
    DunningCampaignStatus,
    StepStatus,
)
from app.models.dunning_communication import (
    ENGAGEMENT_ORDER,
    TERMINAL_COMMUNICATION_STATUSES,
    CommunicationStatus,
    DunningCommunication,
)
from app.models.payment_failure import (
    TERMINAL_FAILURE_STATUSES,
    PaymentFailure,
    PaymentFailureStatus,
)
from app.models.shared import ensure_utc, utc_now
from app.repositories.customer_repository import CustomerRepository
from app.repositories.dunning_campaign_repository import DunningCampaignRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.schemas.dunning_campaign import (
    CommunicationEvent,
    DunningCampaignCreate,
    DunningCampaignFilter,
    DunningCampaignUpdate,
)
from app.schemas.payment_failure import SweepResult
from app.services.account_state_service import AccountStateService
from app.services.audit_service import AuditService
from app.services.campaign_templates import get_template, template_key
from app.services.notifier import Notifier, get_notifier

logger = logging.getLogger(__name__)

AB_TEST_GROUPS = ("control", "variant_a", "variant_b")

_ENGAGEMENT_TIMESTAMPS = {
    CommunicationStatus.DELIVERED.value: "delivered_at",
    CommunicationStatus.OPENED.value: "opened_at",
    CommunicationStatus.CLICKED.value: "clicked_at",
}


def assign_ab_group(customer_id: UUID, campaign_type: str) -> str:
    """Stable A/B group for a (customer, campaign type) pair."""
    digest = hashlib.sha256(f"{customer_id}:{campaign_type}".encode()).hexdigest()
    return AB_TEST_GROUPS[int(digest, 16) % len(AB_TEST_GROUPS)]


def _format_amount(amount: object, currency: str) -> str:
    value = Decimal(str(amount or 0)) / 100
    return f"{value:.2f} {currency}"


class DunningService:
    """Service for dunning campaign lifecycle and step dispatch."""

    def __init__(
        self,
        db: Session,
        notifier: Notifier | None = None,
        account_states: AccountStateService | None = None,
    ):
        self.db = db
        self.campaign_repo = DunningCampaignRepository(db)
        self.communication_repo = DunningCommunicationRepository(db)
        self.failure_repo = PaymentFailureRepository(db)
        self.customer_repo = CustomerRepository(db)
        self.notifier = notifier or get_notifier()
        self.account_states = account_states or AccountStateService(db)
        self.audit = AuditService(db)

    def get_campaign(self, campaign_id: UUID, caller: Caller) -> DunningCampaign:
        campaign = self.campaign_repo.get_by_id(campaign_id)
        if campaign is None:
            raise NotFoundError("Dunning campaign not found")
        require_customer_access(caller, campaign.customer_id, "view dunning campaign")  # type: ignore[arg-type]
        return campaign

    def list_campaigns(
        self, filters: DunningCampaignFilter, caller: Caller
    ) -> list[DunningCampaign]:
        customer_id = scope_customer_filter(filters.customer_id, caller, "list dunning campaigns")
        return self.campaign_repo.get_all(
            skip=filters.skip,
            limit=filters.limit,
            customer_id=customer_id,
            payment_failure_id=filters.payment_failure_id,
            campaign_type=filters.campaign_type,
            status=filters.status,
            order_by=filters.order_by,
        )

    def list_communications(
        self, campaign_id: UUID, caller: Caller
    ) -> list[DunningCommunication]:
        campaign = self.get_campaign(campaign_id, caller)
        return self.communication_repo.get_by_campaign(campaign.id)  # type: ignore[arg-type]

    def create_campaign(
        self,
        data: DunningCampaignCreate,
        caller: Caller,
        now: datetime | None = None,
    ) -> DunningCampaign:
        """Start a campaign for an open failure.

        If the failure already has an active or paused campaign, that campaign
        is returned unchanged.
        """
        require_admin(caller, "create dunning campaign")
        now = now or utc_now()

        failure = self.failure_repo.get_by_id(data.payment_failure_id)
        if failure is None:
            raise NotFoundError("Payment failure not found")
        if failure.customer_id != data.customer_id:
            raise InputValidationError("Payment failure does not belong to this customer")
        if failure.status in TERMINAL_FAILURE_STATUSES:
            raise InvalidStateError(
                f"Cannot start a campaign for a {failure.status} failure", current=failure
            )

        existing = self.campaign_repo.get_open_for_failure(failure.id)  # type: ignore[arg-type]
        if existing is not None:
            return existing

        template = get_template(data.campaign_type)
        personalization = self._default_personalization(failure)
        personalization.update(data.personalization_data)

        campaign = self.campaign_repo.create(
            customer_id=data.customer_id,
            payment_failure_id=failure.id,
            campaign_type=data.campaign_type,
            sequence_step=1,
            total_steps=template.total_steps,
            status=DunningCampaignStatus.ACTIVE.value,
            current_step_status=StepStatus.PENDING.value,
            started_at=now,
            next_communication_at=now + template.step(1).offset,
            communication_channels=list(data.communication_channels),
            ab_test_group=data.ab_test_group or assign_ab_group(data.customer_id, data.campaign_type),
            personalization_data=personalization,
            metadata_=dict(data.metadata),
        )
        self.audit.log_create(
            "dunning_campaign",
            campaign.id,  # type: ignore[arg-type]
            caller=caller,
            data={
                "payment_failure_id": failure.id,
                "campaign_type": campaign.campaign_type,
                "total_steps": campaign.total_steps,
                "ab_test_group": campaign.ab_test_group,
            },
        )
        logger.info(
            "Started %s dunning campaign %s for failure %s",
            campaign.campaign_type,
            campaign.id,
            failure.id,
        )
        return campaign

    def advance_step(
        self,
        campaign_id: UUID,
        caller: Caller = SYSTEM_CALLER,
        now: datetime | None = None,
    ) -> DunningCampaign:
        """Dispatch the current step and schedule the next one.

        The linked failure is checked first: a resolved failure completes the
        campaign and an abandoned one cancels it, without sending anything.
        """
        require_admin(caller, "advance dunning campaign")
        now = now or utc_now()

        campaign = self.campaign_repo.get_by_id(campaign_id)
        if campaign is None:
            raise NotFoundError("Dunning campaign not found")
        if campaign.status != DunningCampaignStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Cannot advance a {campaign.status} campaign", current=campaign
            )

        failure = self.failure_repo.get_by_id(campaign.payment_failure_id)  # type: ignore[arg-type]
        if failure is not None and failure.status == PaymentFailureStatus.RESOLVED.value:
            return self._terminate(
                campaign,
                DunningCampaignStatus.COMPLETED.value,
                CompletionReason.PAYMENT_RESOLVED.value,
                caller,
                now,
            )
        if failure is not None and failure.status == PaymentFailureStatus.ABANDONED.value:
            return self._terminate(
                campaign,
                DunningCampaignStatus.CANCELED.value,
                CompletionReason.PAYMENT_ABANDONED.value,
                caller,
                now,
            )

        step_number = int(campaign.sequence_step)
        if not self.campaign_repo.claim_step(campaign.id, step_number):  # type: ignore[arg-type]
            self.campaign_repo.refresh(campaign)
            raise InvalidStateError("Campaign step already dispatched", current=campaign)

        template = get_template(str(campaign.campaign_type))
        step = template.step(step_number)
        channels = [c for c in step.channels if c in (campaign.communication_channels or [])]

        # a step released after an error keeps what it already delivered
        earlier = {
            str(c.channel): c
            for c in self.communication_repo.get_by_campaign(campaign.id)  # type: ignore[arg-type]
            if c.sequence_step == step_number
        }
        sent = sum(
            1 for c in earlier.values() if c.status != CommunicationStatus.FAILED.value
        )
        try:
            for channel in channels:
                if channel in earlier:
                    continue
                if self._dispatch(campaign, channel, step_number, now):
                    sent += 1
        except Exception:
            self.db.rollback()
            self.campaign_repo.release_step(campaign.id, step_number)  # type: ignore[arg-type]
            raise

        if not channels:
            step_status = StepStatus.SKIPPED.value
        elif sent:
            step_status = StepStatus.SENT.value
        else:
            step_status = StepStatus.FAILED.value
            logger.warning(
                "All channels failed for campaign %s step %d", campaign.id, step_number
            )

        metadata = dict(campaign.metadata_ or {})
        metadata["last_step_status"] = step_status
        values: dict[str, Any] = {"metadata_": metadata}
        if sent:
            values["last_communication_at"] = now

        exhausted = step_number >= int(campaign.total_steps)
        if exhausted:
            values.update(
                current_step_status=step_status,
                status=DunningCampaignStatus.COMPLETED.value,
                completion_reason=CompletionReason.SEQUENCE_EXHAUSTED.value,
                completed_at=now,
                next_communication_at=None,
            )
        else:
            started_at = ensure_utc(campaign.started_at)
            next_at = started_at + template.step(step_number + 1).offset  # type: ignore[operator]
            values.update(
                sequence_step=step_number + 1,
                current_step_status=StepStatus.PENDING.value,
                next_communication_at=max(next_at, now),
            )

        if not self.campaign_repo.compare_and_set(
            campaign.id, OPEN_CAMPAIGN_STATUSES, values  # type: ignore[arg-type]
        ):
            logger.info("Campaign %s was closed while step %d was sending", campaign.id, step_number)
            return self.campaign_repo.refresh(campaign)

        campaign = self.campaign_repo.refresh(campaign)
        if exhausted:
            self.audit.log_status_change(
                "dunning_campaign",
                campaign.id,  # type: ignore[arg-type]
                DunningCampaignStatus.ACTIVE.value,
                DunningCampaignStatus.COMPLETED.value,
                caller=caller,
                reason=CompletionReason.SEQUENCE_EXHAUSTED.value,
            )
            logger.info("Campaign %s exhausted its sequence", campaign.id)
            self.account_states.recalculate(campaign.customer_id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
        else:
            self.audit.log_update(
                "dunning_campaign",
                campaign.id,  # type: ignore[arg-type]
                caller=caller,
                old_data={"sequence_step": step_number},
                new_data={"sequence_step": campaign.sequence_step, "step_status": step_status},
            )
        return campaign

    def update_campaign(
        self,
        campaign_id: UUID,
        data: DunningCampaignUpdate,
        caller: Caller,
        now: datetime | None = None,
    ) -> DunningCampaign:
        """Admin change of status, channels or metadata.

        Metadata is merged into the existing metadata. Resuming a paused
        campaign reschedules the current step, never into the past.
        """
        require_admin(caller, "update dunning campaign")
        now = now or utc_now()

        campaign = self.campaign_repo.get_by_id(campaign_id)
        if campaign is None:
            raise NotFoundError("Dunning campaign not found")
        if campaign.status not in OPEN_CAMPAIGN_STATUSES:
            raise InvalidStateError(
                f"Cannot update a {campaign.status} campaign", current=campaign
            )

        old_data = {
            "status": campaign.status,
            "communication_channels": list(campaign.communication_channels or []),
            "metadata": dict(campaign.metadata_ or {}),
        }
        values: dict[str, Any] = {}
        if data.communication_channels is not None:
            values["communication_channels"] = list(data.communication_channels)
        if data.metadata is not None:
            values["metadata_"] = {**(campaign.metadata_ or {}), **data.metadata}

        if data.status is not None and data.status != campaign.status:
            values["status"] = data.status
            if campaign.current_step_status == StepStatus.SENDING.value:
                # a step left sending by a crashed worker is dispatched again on resume
                values["current_step_status"] = StepStatus.PENDING.value
            if data.status == DunningCampaignStatus.CANCELED.value:
                values.update(
                    completion_reason=CompletionReason.ADMIN_CANCELED.value,
                    completed_at=now,
                    next_communication_at=None,
                )
            elif data.status == DunningCampaignStatus.ACTIVE.value:
                template = get_template(str(campaign.campaign_type))
                due = ensure_utc(campaign.started_at) + template.step(  # type: ignore[operator]
                    int(campaign.sequence_step)
                ).offset
                values["next_communication_at"] = max(due, now)

        if not values:
            return campaign

        if not self.campaign_repo.compare_and_set(
            campaign.id, (str(campaign.status),), values  # type: ignore[arg-type]
        ):
            campaign = self.campaign_repo.refresh(campaign)
            raise InvalidStateError("Campaign changed concurrently", current=campaign)

        campaign = self.campaign_repo.refresh(campaign)
        self.audit.log_update(
            "dunning_campaign",
            campaign.id,  # type: ignore[arg-type]
            caller=caller,
            old_data=old_data,
            new_data={
                "status": campaign.status,
                "communication_channels": list(campaign.communication_channels or []),
                "metadata": dict(campaign.metadata_ or {}),
            },
        )
        return campaign

    def record_communication_event(
        self,
        communication_id: UUID,
        event: CommunicationEvent,
        caller: Caller = SYSTEM_CALLER,
    ) -> DunningCommunication:
        """Apply notifier feedback. Engagement only moves forward."""
        require_admin(caller, "record communication event")
        communication = self.communication_repo.get_by_id(communication_id)
        if communication is None:
            raise NotFoundError("Communication not found")
        if communication.status in TERMINAL_COMMUNICATION_STATUSES:
            raise InvalidStateError(
                f"Communication already {communication.status}", current=communication
            )

        occurred_at = ensure_utc(event.occurred_at) or utc_now()
        if event.event in TERMINAL_COMMUNICATION_STATUSES:
            communication.status = event.event  # type: ignore[assignment]
            communication.failure_reason = event.reason  # type: ignore[assignment]
            return self.communication_repo.save(communication)

        if ENGAGEMENT_ORDER[event.event] <= ENGAGEMENT_ORDER[str(communication.status)]:
            # duplicate or out-of-order feedback
            return communication

        communication.status = event.event  # type: ignore[assignment]
        # later engagement implies the earlier stages happened
        for status, attr in _ENGAGEMENT_TIMESTAMPS.items():
            if ENGAGEMENT_ORDER[status] <= ENGAGEMENT_ORDER[event.event]:
                if getattr(communication, attr) is None:
                    setattr(communication, attr, occurred_at)
        return self.communication_repo.save(communication)

    def on_failure_resolved(
        self, failure: PaymentFailure, caller: Caller = SYSTEM_CALLER, now: datetime | None = None
    ) -> DunningCampaign | None:
        campaign = self.campaign_repo.get_open_for_failure(failure.id)  # type: ignore[arg-type]
        if campaign is None:
            return None
        return self._terminate(
            campaign,
            DunningCampaignStatus.COMPLETED.value,
            CompletionReason.PAYMENT_RESOLVED.value,
            caller,
            now or utc_now(),
        )

    def on_failure_abandoned(
        self, failure: PaymentFailure, caller: Caller = SYSTEM_CALLER, now: datetime | None = None
    ) -> DunningCampaign | None:
        campaign = self.campaign_repo.get_open_for_failure(failure.id)  # type: ignore[arg-type]
        if campaign is None:
            return None
        return self._terminate(
            campaign,
            DunningCampaignStatus.CANCELED.value,
            CompletionReason.PAYMENT_ABANDONED.value,
            caller,
            now or utc_now(),
        )

    def on_failure_escalated(
        self, failure: PaymentFailure, now: datetime | None = None
    ) -> DunningCampaign | None:
        """Flag the campaign and pull its next message forward to now."""
        now = now or utc_now()
        campaign = self.campaign_repo.get_open_for_failure(failure.id)  # type: ignore[arg-type]
        if campaign is None:
            return None
        metadata = {**(campaign.metadata_ or {}), "escalated_at": now.isoformat()}
        values: dict[str, Any] = {"metadata_": metadata}
        next_at = ensure_utc(campaign.next_communication_at)
        if campaign.status == DunningCampaignStatus.ACTIVE.value and (
            next_at is None or next_at > now
        ):
            values["next_communication_at"] = now
        self.campaign_repo.compare_and_set(
            campaign.id, (str(campaign.status),), values  # type: ignore[arg-type]
        )
        return self.campaign_repo.refresh(campaign)

    def process_due_communications(
        self, now: datetime | None = None, limit: int | None = None
    ) -> SweepResult:
        """Advance every active campaign whose next communication is due."""
        now = now or utc_now()
        result = SweepResult()
        for campaign in self.campaign_repo.get_due(now, limit or settings.SWEEP_BATCH_SIZE):
            result.processed += 1
            try:
                advanced = self.advance_step(campaign.id, SYSTEM_CALLER, now)  # type: ignore[arg-type]
            except InvalidStateError as exc:
                logger.info("Skipping campaign %s: %s", campaign.id, exc.message)
                result.skipped += 1
                continue
            except Exception:
                logger.exception("Advancing campaign %s raised unexpectedly", campaign.id)
                self.db.rollback()
                result.failed += 1
                continue
            if (advanced.metadata_ or {}).get("last_step_status") == StepStatus.FAILED.value:
                result.failed += 1
            else:
                result.succeeded += 1
        if result.processed:
            logger.info(
                "Dunning sweep: %d processed, %d sent, %d failed, %d skipped",
                result.processed,
                result.succeeded,
                result.failed,
                result.skipped,
            )
        return result

    def _dispatch(
        self, campaign: DunningCampaign, channel: str, step_number: int, now: datetime
    ) -> bool:
        key = template_key(str(campaign.campaign_type), channel, step_number)
        personalization = dict(campaign.personalization_data or {})
        personalization.setdefault("customer_id", str(campaign.customer_id))
        personalization["ab_test_group"] = campaign.ab_test_group
        try:
            receipt = self.notifier.send(channel, key, personalization)
        except UpstreamError as exc:
            logger.warning("Notifier unavailable for campaign %s (%s): %s", campaign.id, channel, exc)
            self.communication_repo.create(
                campaign_id=campaign.id,
                customer_id=campaign.customer_id,
                channel=channel,
                template_key=key,
                sequence_step=step_number,
                status=CommunicationStatus.FAILED.value,
                failure_reason=exc.message,
            )
            return False

        self.communication_repo.create(
            campaign_id=campaign.id,
            customer_id=campaign.customer_id,
            channel=channel,
            template_key=key,
            sequence_step=step_number,
            status=(
                CommunicationStatus.SENT.value if receipt.accepted else CommunicationStatus.FAILED.value
            ),
            message_id=receipt.message_id,
            failure_reason=receipt.error,
            sent_at=now if receipt.accepted else None,
        )
        return receipt.accepted

    def _terminate(
        self,
        campaign: DunningCampaign,
        status: str,
        reason: str,
        caller: Caller,
        now: datetime,
    ) -> DunningCampaign:
        previous = str(campaign.status)
        closed = self.campaign_repo.compare_and_set(
            campaign.id,  # type: ignore[arg-type]
            OPEN_CAMPAIGN_STATUSES,
            {
                "status": status,
                "completion_reason": reason,
                "completed_at": now,
                "next_communication_at": None,
            },
        )
        campaign = self.campaign_repo.refresh(campaign)
        if closed:
            self.audit.log_status_change(
                "dunning_campaign",
                campaign.id,  # type: ignore[arg-type]
                previous,
                status,
                caller=caller,
                reason=reason,
            )
            logger.info("Campaign %s %s (%s)", campaign.id, status, reason)
        return campaign

    def _default_personalization(self, failure: PaymentFailure) -> dict[str, Any]:
        customer = self.customer_repo.get_by_id(failure.customer_id)  # type: ignore[arg-type]
        return {
            "customer_id": str(failure.customer_id),
            "customer_name": customer.name if customer else "there",
            "customer_email": customer.email if customer else None,
            "customer_phone": customer.phone if customer else None,
            "company_name": settings.COMPANY_NAME,
            "support_email": settings.SUPPORT_EMAIL,
            "support_phone": settings.SUPPORT_PHONE,
            "billing_url": f"{settings.APP_URL.rstrip('/')}/billing",
            "amount": _format_amount(failure.amount_cents, str(failure.currency)),
            "failure_reason": failure.failure_reason,
        }

