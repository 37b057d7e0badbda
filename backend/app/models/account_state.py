"""AccountState model - append-only history of a customer's access tier."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, UniqueConstraint

from app.core.database import Base
from app.models.shared import UUIDType, generate_uuid, utc_now


class AccountStateType(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"
    REACTIVATED = "reactivated"


class AccountState(Base):
    """One row per transition. The current state is the newest row for the customer."""

    __tablename__ = "account_states"
    __table_args__ = (
        UniqueConstraint("customer_id", "version", name="uq_account_states_customer_version"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    customer_id = Column(UUIDType, nullable=False, index=True)
    state = Column(String(20), nullable=False, default=AccountStateType.ACTIVE.value)
    previous_state = Column(String(20), nullable=True)
    reason = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False, default=1)

    grace_period_end = Column(DateTime(timezone=True), nullable=True)
    suspension_date = Column(DateTime(timezone=True), nullable=True)
    reactivation_date = Column(DateTime(timezone=True), nullable=True)
    feature_restrictions = Column(JSON, nullable=False, default=list)

    manual_override = Column(Boolean, nullable=False, default=False)
    override_reason = Column(String(500), nullable=True)
    override_by = Column(String(255), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, index=True)
