"""Recovery analytics repository for data access."""

from datetime import date
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.recovery_analytics import RecoveryAnalyticsRecord


class RecoveryAnalyticsRepository:
    """Repository for RecoveryAnalyticsRecord model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(
        self, metrics_date: date, campaign_type: str, customer_segment: str
    ) -> RecoveryAnalyticsRecord | None:
        return (
            self.db.query(RecoveryAnalyticsRecord)
            .filter(
                RecoveryAnalyticsRecord.date == metrics_date,
                RecoveryAnalyticsRecord.campaign_type == campaign_type,
                RecoveryAnalyticsRecord.customer_segment == customer_segment,
            )
            .first()
        )

    def get_all(
        self,
        start_date: date,
        end_date: date,
        campaign_type: str | None = None,
        customer_segment: str | None = None,
    ) -> list[RecoveryAnalyticsRecord]:
        query = self.db.query(RecoveryAnalyticsRecord).filter(
            RecoveryAnalyticsRecord.date >= start_date,
            RecoveryAnalyticsRecord.date <= end_date,
        )
        if campaign_type is not None:
            query = query.filter(RecoveryAnalyticsRecord.campaign_type == campaign_type)
        if customer_segment is not None:
            query = query.filter(RecoveryAnalyticsRecord.customer_segment == customer_segment)
        return query.order_by(
            RecoveryAnalyticsRecord.date.asc(),
            RecoveryAnalyticsRecord.campaign_type.asc(),
            RecoveryAnalyticsRecord.customer_segment.asc(),
        ).all()

    def upsert(
        self,
        metrics_date: date,
        campaign_type: str,
        customer_segment: str,
        metrics: dict[str, Any],
    ) -> RecoveryAnalyticsRecord:
        """Create or update the record for (date, campaign_type, customer_segment).

        If a concurrent run inserted the same key first, the unique constraint
        rejects our insert and the existing row is updated instead.
        """
        existing = self.get_by_key(metrics_date, campaign_type, customer_segment)
        if existing is None:
            record = RecoveryAnalyticsRecord(
                date=metrics_date,
                campaign_type=campaign_type,
                customer_segment=customer_segment,
                **metrics,
            )
            self.db.add(record)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                existing = self.get_by_key(metrics_date, campaign_type, customer_segment)
                if existing is None:
                    raise
            else:
                self.db.refresh(record)
                return record

        for key, value in metrics.items():
            setattr(existing, key, value)
        self.db.commit()
        self.db.refresh(existing)
        return existing
