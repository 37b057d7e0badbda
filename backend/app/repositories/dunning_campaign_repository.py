"""DunningCampaign repository for data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.sorting import apply_order_by
from app.models.dunning_campaign import (
    OPEN_CAMPAIGN_STATUSES,
    DunningCampaign,
    DunningCampaignStatus,
    StepStatus,
)


class DunningCampaignRepository:
    """Repository for DunningCampaign model."""

    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        customer_id: UUID | None = None,
        payment_failure_id: UUID | None = None,
        campaign_type: str | None = None,
        status: str | None = None,
        order_by: str | None = None,
    ) -> list[DunningCampaign]:
        """Get dunning campaigns matching the given filters."""
        query = self.db.query(DunningCampaign)
        if customer_id is not None:
            query = query.filter(DunningCampaign.customer_id == customer_id)
        if payment_failure_id is not None:
            query = query.filter(DunningCampaign.payment_failure_id == payment_failure_id)
        if campaign_type is not None:
            query = query.filter(DunningCampaign.campaign_type == campaign_type)
        if status is not None:
            query = query.filter(DunningCampaign.status == status)
        query = apply_order_by(query, DunningCampaign, order_by)
        return query.offset(skip).limit(limit).all()

    def get_by_id(self, campaign_id: UUID) -> DunningCampaign | None:
        """Get a dunning campaign by ID."""
        return self.db.query(DunningCampaign).filter(DunningCampaign.id == campaign_id).first()

    def get_open_for_failure(self, payment_failure_id: UUID) -> DunningCampaign | None:
        """Get the active or paused campaign for a payment failure."""
        return (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.payment_failure_id == payment_failure_id,
                DunningCampaign.status.in_(OPEN_CAMPAIGN_STATUSES),
            )
            .first()
        )

    def get_latest_for_failure(self, payment_failure_id: UUID) -> DunningCampaign | None:
        return (
            self.db.query(DunningCampaign)
            .filter(DunningCampaign.payment_failure_id == payment_failure_id)
            .order_by(DunningCampaign.created_at.desc(), DunningCampaign.id.desc())
            .first()
        )

    def get_for_failures(self, payment_failure_ids: list[UUID]) -> list[DunningCampaign]:
        if not payment_failure_ids:
            return []
        return (
            self.db.query(DunningCampaign)
            .filter(DunningCampaign.payment_failure_id.in_(payment_failure_ids))
            .all()
        )

    def get_due(self, now: datetime, limit: int) -> list[DunningCampaign]:
        """Active campaigns whose next communication is due."""
        return (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.status == DunningCampaignStatus.ACTIVE.value,
                DunningCampaign.current_step_status == StepStatus.PENDING.value,
                DunningCampaign.next_communication_at.isnot(None),
                DunningCampaign.next_communication_at <= now,
            )
            .order_by(DunningCampaign.next_communication_at.asc())
            .limit(limit)
            .all()
        )

    def create(self, **fields: Any) -> DunningCampaign:
        """Create a new dunning campaign."""
        campaign = DunningCampaign(**fields)
        self.db.add(campaign)
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def claim_step(self, campaign_id: UUID, sequence_step: int) -> bool:
        """Mark the current step as sending if nobody else has claimed it."""
        updated = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.status == DunningCampaignStatus.ACTIVE.value,
                DunningCampaign.sequence_step == sequence_step,
                DunningCampaign.current_step_status == StepStatus.PENDING.value,
            )
            .update(
                {"current_step_status": StepStatus.SENDING.value},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def release_step(self, campaign_id: UUID, sequence_step: int) -> bool:
        """Hand a claimed step back so the next sweep dispatches it again."""
        updated = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.sequence_step == sequence_step,
                DunningCampaign.current_step_status == StepStatus.SENDING.value,
            )
            .update(
                {"current_step_status": StepStatus.PENDING.value},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def compare_and_set(
        self,
        campaign_id: UUID,
        expected_statuses: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        """Apply ``values`` only while the campaign status is one of ``expected_statuses``."""
        updated = (
            self.db.query(DunningCampaign)
            .filter(
                DunningCampaign.id == campaign_id,
                DunningCampaign.status.in_(expected_statuses),
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def save(self, campaign: DunningCampaign) -> DunningCampaign:
        self.db.commit()
        self.db.refresh(campaign)
        return campaign

    def refresh(self, campaign: DunningCampaign) -> DunningCampaign:
        self.db.refresh(campaign)
        return campaign
