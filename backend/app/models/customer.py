from sqlalchemy import Column, DateTime, Integer, String

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class Customer(Base):
    """Snapshot of the billing customer, used for segmentation and message personalization."""

    __tablename__ = "customers"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    monthly_recurring_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
