"""PaymentFailure schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PaymentFailedEvent(BaseModel):
    """Failure event delivered by the payment processor."""

    idempotency_key: str = Field(..., min_length=1, max_length=255)
    customer_id: UUID
    subscription_id: UUID | None = None
    invoice_id: UUID | None = None
    payment_method_id: str | None = None
    amount_cents: Decimal = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    failure_reason: str = Field(..., min_length=1, max_length=255)
    failure_code: str | None = Field(default=None, max_length=100)
    failure_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentSucceededEvent(BaseModel):
    """Success event delivered by the payment processor."""

    idempotency_key: str = Field(..., min_length=1, max_length=255)
    customer_id: UUID
    subscription_id: UUID | None = None
    transaction_id: str | None = None


class RetryPaymentRequest(BaseModel):
    failure_id: UUID
    payment_method_id: str | None = None
    skip_retry_count: bool = False


class RetryPaymentBody(BaseModel):
    """Request body for the retry endpoint (failure id comes from the path)."""

    payment_method_id: str | None = None
    skip_retry_count: bool = False


class FailureActionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


class PaymentFailureFilter(BaseModel):
    customer_id: UUID | None = None
    subscription_id: UUID | None = None
    status: str | None = Field(
        default=None, pattern=r"^(pending|retrying|resolved|escalated|abandoned)$"
    )
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)
    order_by: str | None = None


class PaymentFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    customer_id: UUID
    subscription_id: UUID | None = None
    invoice_id: UUID | None = None
    payment_method_id: str | None = None
    amount_cents: Decimal
    currency: str
    failure_reason: str
    failure_code: str | None = None
    failure_message: str | None = None
    classification: str
    severity: str
    status: str
    retry_count: int
    max_retry_attempts: int
    next_retry_at: datetime | None = None
    last_retry_at: datetime | None = None
    last_transaction_id: str | None = None
    resolution_type: str | None = None
    resolved_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


class RecordFailureResult(BaseModel):
    failure: PaymentFailureResponse
    created: bool
    duplicate: bool = False


class RetryPaymentResult(BaseModel):
    success: bool
    failure: PaymentFailureResponse
    transaction_id: str | None = None
    error_code: str | None = None
    next_retry_at: datetime | None = None


class SweepResult(BaseModel):
    """Counts from one pass of a background sweep."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    abandoned: int = 0
