"""Pydantic schemas for AuditLog."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

AUDITED_RESOURCE_TYPES = (
    "payment_failure",
    "dunning_campaign",
    "account_state",
    "recovery_analytics",
)

RESOURCE_TYPE_PATTERN = r"^(payment_failure|dunning_campaign|account_state|recovery_analytics)$"


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    resource_type: str
    resource_id: UUID
    action: str
    changes: dict[str, Any]
    actor_type: str
    actor_id: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class AuditLogFilter(BaseModel):
    resource_type: str | None = Field(default=None, pattern=RESOURCE_TYPE_PATTERN)
    resource_id: UUID | None = None
    action: str | None = Field(default=None, pattern=r"^(created|updated|status_changed)$")
    actor_type: str | None = Field(default=None, pattern=r"^(admin|customer|system)$")
    actor_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)
    order_by: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "AuditLogFilter":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self
