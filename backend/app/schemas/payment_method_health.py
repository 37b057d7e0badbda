"""Schemas for PaymentMethodHealth."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class PaymentMethodHealthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    payment_method_id: str
    success_count: int
    failure_count: int
    last_successful_payment: datetime | None
    last_failed_payment: datetime | None
    common_failure_reasons: list[str]
    health_score: float
    recommendation: str
    blocked_until: datetime | None
