"""Daily recovery metrics per campaign type and customer segment."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import Caller, require_admin
from app.models.dunning_campaign import DunningCampaign, DunningCampaignStatus
from app.models.dunning_communication import DunningCommunication
from app.models.payment_failure import PaymentFailure, PaymentFailureStatus
from app.models.recovery_analytics import RecoveryAnalyticsRecord
from app.models.shared import ensure_utc
from app.repositories.dunning_campaign_repository import DunningCampaignRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.repositories.recovery_analytics_repository import RecoveryAnalyticsRepository
from app.schemas.recovery_analytics import RecoveryAnalyticsFilter, RecoverySummary
from app.services.audit_service import AuditService
from app.services.customer_segments import get_customer_segment

logger = logging.getLogger(__name__)

NO_CAMPAIGN = "none"


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


class RecoveryAnalyticsService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = RecoveryAnalyticsRepository(db)
        self.failure_repo = PaymentFailureRepository(db)
        self.campaign_repo = DunningCampaignRepository(db)
        self.communication_repo = DunningCommunicationRepository(db)
        self.audit = AuditService(db)

    def generate_daily_metrics(
        self, metrics_date: date, caller: Caller
    ) -> list[RecoveryAnalyticsRecord]:
        """Roll up failures created on ``metrics_date`` (UTC).

        Re-running for the same date overwrites the earlier figures.
        """
        require_admin(caller, "generate recovery metrics")
        start = datetime.combine(metrics_date, time.min, tzinfo=UTC)
        end = start + timedelta(days=1)

        groups: dict[tuple[str, str], list[tuple[PaymentFailure, DunningCampaign | None]]] = (
            defaultdict(list)
        )
        segments: dict[UUID, str] = {}
        for failure in self.failure_repo.get_created_between(start, end):
            customer_id: UUID = failure.customer_id  # type: ignore[assignment]
            if customer_id not in segments:
                segments[customer_id] = get_customer_segment(self.db, customer_id, end)
            campaign = self.campaign_repo.get_latest_for_failure(failure.id)  # type: ignore[arg-type]
            campaign_type = str(campaign.campaign_type) if campaign else NO_CAMPAIGN
            groups[(campaign_type, segments[customer_id])].append((failure, campaign))

        records = []
        for (campaign_type, segment), items in sorted(groups.items()):
            record = self.repo.upsert(
                metrics_date, campaign_type, segment, self._compute(items)
            )
            self.audit.log_update(
                "recovery_analytics",
                record.id,  # type: ignore[arg-type]
                caller=caller,
                new_data={
                    "date": metrics_date.isoformat(),
                    "campaign_type": campaign_type,
                    "customer_segment": segment,
                    "total_failures": record.total_failures,
                    "total_recovered": record.total_recovered,
                },
            )
            records.append(record)

        logger.info(
            "Generated recovery metrics for %s: %d groups", metrics_date.isoformat(), len(records)
        )
        return records

    def get_analytics(
        self, filters: RecoveryAnalyticsFilter, caller: Caller
    ) -> list[RecoveryAnalyticsRecord]:
        require_admin(caller, "view recovery analytics")
        return self.repo.get_all(
            filters.start_date,
            filters.end_date,
            campaign_type=filters.campaign_type,
            customer_segment=filters.customer_segment,
        )

    def get_summary(self, filters: RecoveryAnalyticsFilter, caller: Caller) -> RecoverySummary:
        records = self.get_analytics(filters, caller)
        total_failures = sum(int(r.total_failures) for r in records)
        total_recovered = sum(int(r.total_recovered) for r in records)
        return RecoverySummary(
            total_failures=total_failures,
            total_recovered=total_recovered,
            recovery_rate=_rate(total_recovered, total_failures),
            revenue_recovered_cents=sum(
                (Decimal(str(r.revenue_recovered_cents)) for r in records), Decimal("0")
            ),
            total_campaigns_started=sum(int(r.total_campaigns_started) for r in records),
            total_communications_sent=sum(int(r.total_communications_sent) for r in records),
        )

    def _compute(
        self, items: list[tuple[PaymentFailure, DunningCampaign | None]]
    ) -> dict[str, object]:
        failures = [f for f, _ in items]
        campaigns = [c for _, c in items if c is not None]
        recovered = [f for f in failures if f.status == PaymentFailureStatus.RESOLVED.value]

        recovery_hours = [
            (ensure_utc(f.resolved_at) - ensure_utc(f.created_at)).total_seconds() / 3600  # type: ignore[operator]
            for f in recovered
            if f.resolved_at is not None and f.created_at is not None
        ]

        communications: list[DunningCommunication] = self.communication_repo.get_for_campaigns(
            [c.id for c in campaigns]  # type: ignore[misc]
        )
        sent = [c for c in communications if c.sent_at is not None]
        emails = [c for c in sent if c.channel == "email"]

        return {
            "total_failures": len(failures),
            "total_recovered": len(recovered),
            "recovery_rate": _rate(len(recovered), len(failures)),
            "revenue_recovered_cents": sum(
                (Decimal(str(f.amount_cents)) for f in recovered), Decimal("0")
            ),
            "avg_recovery_time_hours": (
                round(sum(recovery_hours) / len(recovery_hours), 2) if recovery_hours else 0.0
            ),
            "total_campaigns_started": len(campaigns),
            "total_campaigns_completed": sum(
                1 for c in campaigns if c.status == DunningCampaignStatus.COMPLETED.value
            ),
            "total_communications_sent": len(sent),
            "delivery_rate": _rate(sum(1 for c in sent if c.delivered_at is not None), len(sent)),
            "email_open_rate": _rate(sum(1 for c in emails if c.opened_at is not None), len(emails)),
            "email_click_rate": _rate(
                sum(1 for c in emails if c.clicked_at is not None), len(emails)
            ),
        }
