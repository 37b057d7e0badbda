"""AccountState schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

STATE_PATTERN = r"^(active|grace_period|restricted|suspended|reactivated)$"


class AccountStateUpdate(BaseModel):
    """Admin transition of a customer's account state."""

    account_state_id: UUID
    state: str = Field(..., pattern=STATE_PATTERN)
    reason: str = Field(..., min_length=1, max_length=255)
    manual_override: bool | None = None
    override_reason: str | None = Field(default=None, max_length=500)
    override_by: str | None = Field(default=None, max_length=255)


class AccountStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    customer_id: UUID
    state: str
    previous_state: str | None = None
    reason: str
    version: int
    grace_period_end: datetime | None = None
    suspension_date: datetime | None = None
    reactivation_date: datetime | None = None
    feature_restrictions: list[str] = Field(default_factory=list)
    manual_override: bool
    override_reason: str | None = None
    override_by: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


class FeatureRestrictionsResponse(BaseModel):
    account_state: str
    restrictions: list[str]
    allowed_features: list[str]
    grace_period_end: datetime | None = None


class FeatureAccessResponse(BaseModel):
    feature: str
    allowed: bool
    reason: str | None = None
    grace_period_end: datetime | None = None
