"""RecoveryAnalyticsRecord model for daily recovery rollups."""

from sqlalchemy import Column, Date, DateTime, Float, Integer, Numeric, String, UniqueConstraint

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class RecoveryAnalyticsRecord(Base):
    """Daily metrics per campaign type and customer segment."""

    __tablename__ = "recovery_analytics"
    __table_args__ = (
        UniqueConstraint(
            "date",
            "campaign_type",
            "customer_segment",
            name="uq_recovery_analytics_date_type_segment",
        ),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    date = Column(Date, nullable=False, index=True)
    campaign_type = Column(String(50), nullable=False)
    customer_segment = Column(String(50), nullable=False)

    total_failures = Column(Integer, nullable=False, default=0)
    total_recovered = Column(Integer, nullable=False, default=0)
    recovery_rate = Column(Float, nullable=False, default=0.0)
    revenue_recovered_cents = Column(Numeric(14, 4), nullable=False, default=0)
    avg_recovery_time_hours = Column(Float, nullable=False, default=0.0)

    total_campaigns_started = Column(Integer, nullable=False, default=0)
    total_campaigns_completed = Column(Integer, nullable=False, default=0)
    total_communications_sent = Column(Integer, nullable=False, default=0)
    delivery_rate = Column(Float, nullable=False, default=0.0)
    email_open_rate = Column(Float, nullable=False, default=0.0)
    email_click_rate = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
