"""PaymentFailure repository for data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.sorting import apply_order_by
from app.models.payment_failure import (
    OPEN_FAILURE_STATUSES,
    PaymentFailure,
    PaymentFailureStatus,
)


class PaymentFailureRepository:
    """Repository for PaymentFailure model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, failure_id: UUID) -> PaymentFailure | None:
        return self.db.query(PaymentFailure).filter(PaymentFailure.id == failure_id).first()

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        customer_id: UUID | None = None,
        subscription_id: UUID | None = None,
        status: str | None = None,
        order_by: str | None = None,
    ) -> list[PaymentFailure]:
        query = self.db.query(PaymentFailure)
        if customer_id is not None:
            query = query.filter(PaymentFailure.customer_id == customer_id)
        if subscription_id is not None:
            query = query.filter(PaymentFailure.subscription_id == subscription_id)
        if status is not None:
            query = query.filter(PaymentFailure.status == status)
        query = apply_order_by(query, PaymentFailure, order_by)
        return query.offset(skip).limit(limit).all()

    def get_open_for(
        self, customer_id: UUID, subscription_id: UUID | None
    ) -> PaymentFailure | None:
        """The open failure for a (customer, subscription) pair, if any."""
        query = self.db.query(PaymentFailure).filter(
            PaymentFailure.customer_id == customer_id,
            PaymentFailure.status.in_(OPEN_FAILURE_STATUSES),
        )
        if subscription_id is None:
            query = query.filter(PaymentFailure.subscription_id.is_(None))
        else:
            query = query.filter(PaymentFailure.subscription_id == subscription_id)
        return query.order_by(PaymentFailure.created_at.desc()).first()

    def get_for_customer(self, customer_id: UUID) -> list[PaymentFailure]:
        return (
            self.db.query(PaymentFailure)
            .filter(PaymentFailure.customer_id == customer_id)
            .order_by(PaymentFailure.created_at.asc(), PaymentFailure.id.asc())
            .all()
        )

    def count_since(self, customer_id: UUID, since: datetime) -> int:
        return (
            self.db.query(func.count(PaymentFailure.id))
            .filter(
                PaymentFailure.customer_id == customer_id,
                PaymentFailure.created_at >= since,
            )
            .scalar()
            or 0
        )

    def get_created_between(self, start: datetime, end: datetime) -> list[PaymentFailure]:
        return (
            self.db.query(PaymentFailure)
            .filter(
                PaymentFailure.created_at >= start,
                PaymentFailure.created_at < end,
            )
            .all()
        )

    def get_due_for_retry(self, now: datetime, limit: int) -> list[PaymentFailure]:
        return (
            self.db.query(PaymentFailure)
            .filter(
                PaymentFailure.status == PaymentFailureStatus.PENDING.value,
                PaymentFailure.next_retry_at.isnot(None),
                PaymentFailure.next_retry_at <= now,
            )
            .order_by(PaymentFailure.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    def get_due_for_abandonment(self, now: datetime, limit: int) -> list[PaymentFailure]:
        return (
            self.db.query(PaymentFailure)
            .filter(
                PaymentFailure.status == PaymentFailureStatus.ESCALATED.value,
                PaymentFailure.next_retry_at.isnot(None),
                PaymentFailure.next_retry_at <= now,
            )
            .order_by(PaymentFailure.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    def create(self, **fields: Any) -> PaymentFailure:
        failure = PaymentFailure(**fields)
        self.db.add(failure)
        self.db.commit()
        self.db.refresh(failure)
        return failure

    def compare_and_set(
        self,
        failure_id: UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool:
        """Apply ``values`` only if the row is still in ``expected_status``.

        Returns False when another worker moved the failure first.
        """
        updated = (
            self.db.query(PaymentFailure)
            .filter(
                PaymentFailure.id == failure_id,
                PaymentFailure.status == expected_status,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def save(self, failure: PaymentFailure) -> PaymentFailure:
        self.db.commit()
        self.db.refresh(failure)
        return failure

    def refresh(self, failure: PaymentFailure) -> PaymentFailure:
        self.db.refresh(failure)
        return failure
