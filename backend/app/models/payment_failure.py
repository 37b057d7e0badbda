"""PaymentFailure model for failed charges awaiting recovery."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class PaymentFailureStatus(str, Enum):
    """Payment failure lifecycle status."""

    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"


# Failures that still need recovery work
OPEN_FAILURE_STATUSES = (
    PaymentFailureStatus.PENDING.value,
    PaymentFailureStatus.RETRYING.value,
    PaymentFailureStatus.ESCALATED.value,
)

TERMINAL_FAILURE_STATUSES = (
    PaymentFailureStatus.RESOLVED.value,
    PaymentFailureStatus.ABANDONED.value,
)


class ResolutionType(str, Enum):
    """How a failure left the open states."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    MANUAL = "manual"


class PaymentFailure(Base):
    """PaymentFailure model - one open failure per customer and subscription."""

    __tablename__ = "payment_failures"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(UUIDType, nullable=False, index=True)
    subscription_id = Column(UUIDType, nullable=True, index=True)
    invoice_id = Column(UUIDType, nullable=True)
    payment_method_id = Column(String(255), nullable=True)

    amount_cents = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    failure_reason = Column(String(255), nullable=False)
    failure_code = Column(String(100), nullable=True)
    failure_message = Column(Text, nullable=True)
    classification = Column(String(50), nullable=False, default="temporary")
    severity = Column(String(20), nullable=False, default="medium")

    status = Column(
        String(20), nullable=False, default=PaymentFailureStatus.PENDING.value, index=True
    )
    retry_count = Column(Integer, nullable=False, default=0)
    max_retry_attempts = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_transaction_id = Column(String(255), nullable=True)

    resolution_type = Column(String(50), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
