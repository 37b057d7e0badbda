"""JobExecution model: one row per background sweep run."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class JobType(str, Enum):
    PAYMENT_RETRY = "payment_retry"
    DUNNING_CAMPAIGNS = "dunning_campaigns"
    GRACE_PERIOD_MONITORING = "grace_period_monitoring"
    ANALYTICS_GENERATION = "analytics_generation"


class JobExecution(Base):
    __tablename__ = "job_executions"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    job_type = Column(String(50), nullable=False, index=True)
    trigger = Column(String(20), nullable=False, default="cron")
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False, default=True)
    processed = Column(Integer, nullable=False, default=0)
    succeeded = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
