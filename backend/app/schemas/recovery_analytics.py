"""Recovery analytics schemas."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RecoveryAnalyticsFilter(BaseModel):
    start_date: date
    end_date: date
    campaign_type: str | None = None
    customer_segment: str | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "RecoveryAnalyticsFilter":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class GenerateMetricsRequest(BaseModel):
    date: date


class RecoveryAnalyticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    date: date
    campaign_type: str
    customer_segment: str
    total_failures: int
    total_recovered: int
    recovery_rate: float
    revenue_recovered_cents: Decimal
    avg_recovery_time_hours: float
    total_campaigns_started: int
    total_campaigns_completed: int
    total_communications_sent: int
    delivery_rate: float
    email_open_rate: float
    email_click_rate: float
    created_at: datetime
    updated_at: datetime


class RecoverySummary(BaseModel):
    total_failures: int = 0
    total_recovered: int = 0
    recovery_rate: float = 0.0
    revenue_recovered_cents: Decimal = Field(default=Decimal("0"))
    total_campaigns_started: int = 0
    total_communications_sent: int = 0
