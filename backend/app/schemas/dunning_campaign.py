"""DunningCampaign schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHANNEL_PATTERN = r"^(email|sms|in_app|push)$"
SUPPORTED_CHANNELS = ("email", "sms", "in_app", "push")


def _validate_channels(channels: list[str] | None) -> list[str] | None:
    if channels is None:
        return None
    unknown = [c for c in channels if c not in SUPPORTED_CHANNELS]
    if unknown:
        raise ValueError(f"Unsupported communication channels: {', '.join(unknown)}")
    # keep first occurrence order, drop duplicates
    return list(dict.fromkeys(channels))


class DunningCampaignCreate(BaseModel):
    """Schema for creating a dunning campaign."""

    customer_id: UUID
    payment_failure_id: UUID
    campaign_type: str = Field(default="standard", pattern=r"^(standard|high_value|at_risk)$")
    communication_channels: list[str] = Field(default_factory=lambda: ["email"], min_length=1)
    personalization_data: dict[str, Any] = Field(default_factory=dict)
    ab_test_group: str | None = Field(default=None, max_length=50)
    metadata: dict[str, Any] = Field(default_factory=dict)

    _check_channels = field_validator("communication_channels")(_validate_channels)


class DunningCampaignUpdate(BaseModel):
    """Schema for the admin update of a dunning campaign."""

    status: str | None = Field(default=None, pattern=r"^(active|paused|canceled)$")
    communication_channels: list[str] | None = Field(default=None, min_length=1)
    metadata: dict[str, Any] | None = None

    _check_channels = field_validator("communication_channels")(_validate_channels)


class DunningCampaignFilter(BaseModel):
    customer_id: UUID | None = None
    payment_failure_id: UUID | None = None
    campaign_type: str | None = None
    status: str | None = Field(default=None, pattern=r"^(active|paused|completed|canceled)$")
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)
    order_by: str | None = None


class DunningCampaignResponse(BaseModel):
    """Schema for dunning campaign response."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    customer_id: UUID
    payment_failure_id: UUID
    campaign_type: str
    sequence_step: int
    total_steps: int
    status: str
    current_step_status: str
    completion_reason: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    next_communication_at: datetime | None = None
    last_communication_at: datetime | None = None
    communication_channels: list[str]
    ab_test_group: str
    personalization_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


class CommunicationEvent(BaseModel):
    """Engagement feedback from the notifier."""

    event: str = Field(..., pattern=r"^(delivered|opened|clicked|bounced|failed)$")
    occurred_at: datetime | None = None
    reason: str | None = None


class DunningCommunicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    campaign_id: UUID
    customer_id: UUID
    channel: str
    template_key: str
    sequence_step: int
    status: str
    message_id: str | None = None
    failure_reason: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    created_at: datetime
