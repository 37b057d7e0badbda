"""DunningCampaign model for per-failure customer outreach sequences."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class DunningCampaignStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"


OPEN_CAMPAIGN_STATUSES = (
    DunningCampaignStatus.ACTIVE.value,
    DunningCampaignStatus.PAUSED.value,
)


class StepStatus(str, Enum):
    """Status of the campaign's current sequence step."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class CompletionReason(str, Enum):
    SEQUENCE_EXHAUSTED = "sequence_exhausted"
    PAYMENT_RESOLVED = "payment_resolved"
    PAYMENT_ABANDONED = "payment_abandoned"
    ADMIN_CANCELED = "admin_canceled"


class DunningCampaign(Base):
    """DunningCampaign model - one campaign per payment failure."""

    __tablename__ = "dunning_campaigns"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(UUIDType, nullable=False, index=True)
    payment_failure_id = Column(
        UUIDType,
        ForeignKey("payment_failures.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    campaign_type = Column(String(50), nullable=False, default="standard")
    sequence_step = Column(Integer, nullable=False, default=1)
    total_steps = Column(Integer, nullable=False)
    status = Column(
        String(20), nullable=False, default=DunningCampaignStatus.ACTIVE.value, index=True
    )
    current_step_status = Column(String(20), nullable=False, default=StepStatus.PENDING.value)
    completion_reason = Column(String(50), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    next_communication_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_communication_at = Column(DateTime(timezone=True), nullable=True)

    communication_channels = Column(JSON, nullable=False, default=list)
    ab_test_group = Column(String(50), nullable=False)
    personalization_data = Column(JSON, nullable=False, default=dict)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
