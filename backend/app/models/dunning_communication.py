"""DunningCommunication model for individual messages sent by a campaign."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class CommunicationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"


# Engagement only moves forward along this order
ENGAGEMENT_ORDER = {
    CommunicationStatus.PENDING.value: 0,
    CommunicationStatus.SENT.value: 1,
    CommunicationStatus.DELIVERED.value: 2,
    CommunicationStatus.OPENED.value: 3,
    CommunicationStatus.CLICKED.value: 4,
}

TERMINAL_COMMUNICATION_STATUSES = (
    CommunicationStatus.BOUNCED.value,
    CommunicationStatus.FAILED.value,
)


class DunningCommunication(Base):
    __tablename__ = "dunning_communications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    campaign_id = Column(
        UUIDType,
        ForeignKey("dunning_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_id = Column(UUIDType, nullable=False, index=True)
    channel = Column(String(20), nullable=False)
    template_key = Column(String(100), nullable=False)
    sequence_step = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=CommunicationStatus.PENDING.value)
    message_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
