"""ProcessedEvent model for deduplicating payment processor events."""

from sqlalchemy import Column, DateTime, ForeignKey, String

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class ProcessedEvent(Base):
    """Processor event already applied, keyed by the processor's idempotency key."""

    __tablename__ = "processed_events"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    idempotency_key = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(50), nullable=False)
    payment_failure_id = Column(
        UUIDType,
        ForeignKey("payment_failures.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), default=utc_now)
