"""AuditLog model for tracking all state changes to recovery entities."""


from sqlalchemy import JSON, Column, DateTime, String

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class AuditLog(Base):
    """AuditLog model - actor, time and before/after values of a change."""

    __tablename__ = "audit_logs"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    resource_type = Column(String(50), nullable=False, index=True)
    resource_id = Column(UUIDType, nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    changes = Column(JSON, nullable=False, default=dict)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
