"""PaymentMethodHealth model for per-card charge history."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, UniqueConstraint

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class HealthRecommendation(str, Enum):
    HEALTHY = "healthy"
    TRY_ALTERNATIVE = "try_alternative"
    CONTACT_BANK = "contact_bank"
    UPDATE_PAYMENT_METHOD = "update_payment_method"


class PaymentMethodHealth(Base):
    """Success and failure counts of one customer's payment method."""

    __tablename__ = "payment_method_health"
    __table_args__ = (
        UniqueConstraint(
            "customer_id", "payment_method_id", name="uq_payment_method_health_customer_method"
        ),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(UUIDType, nullable=False, index=True)
    payment_method_id = Column(String(255), nullable=False)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_successful_payment = Column(DateTime(timezone=True), nullable=True)
    last_failed_payment = Column(DateTime(timezone=True), nullable=True)
    common_failure_reasons = Column(JSON, nullable=False, default=list)
    health_score = Column(Float, nullable=False, default=0.5)
    recommendation = Column(
        String(50), nullable=False, default=HealthRecommendation.HEALTHY.value
    )
    blocked_until = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
