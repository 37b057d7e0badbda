import logging
from datetime import date, timedelta
from typing import Any

from arq import cron

from app.core.auth import SYSTEM_CALLER
from app.core.database import session_scope
from app.models.job_execution import JobType
from app.models.shared import utc_now
from app.services.account_state_service import AccountStateService
from app.services.dunning_service import DunningService
from app.services.job_log_service import JobLogService
from app.services.payment_failure_service import PaymentFailureService
from app.services.recovery_analytics_service import RecoveryAnalyticsService
from app.tasks import redis_settings

logger = logging.getLogger(__name__)

EVERY_FIVE_MINUTES = {0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}


async def process_due_failures_task(ctx: dict[str, Any], trigger: str = "cron") -> dict[str, int]:
    """Background task: retry due payment failures and abandon expired escalations.

    Runs every 5 minutes.
    """
    with session_scope() as db:
        result = JobLogService(db).run(
            JobType.PAYMENT_RETRY.value,
            lambda: PaymentFailureService(db).process_due_failures(),
            trigger=trigger,
        )
        return result.model_dump()


async def process_due_communications_task(
    ctx: dict[str, Any], trigger: str = "cron"
) -> dict[str, int]:
    """Background task: send the next step of every due dunning campaign.

    Runs every 5 minutes.
    """
    with session_scope() as db:
        result = JobLogService(db).run(
            JobType.DUNNING_CAMPAIGNS.value,
            lambda: DunningService(db).process_due_communications(),
            trigger=trigger,
        )
        return result.model_dump()


async def process_expired_grace_periods_task(ctx: dict[str, Any], trigger: str = "cron") -> int:
    """Background task: move accounts whose grace period ended to the next state.

    Runs hourly.
    """
    with session_scope() as db:
        return JobLogService(db).run(
            JobType.GRACE_PERIOD_MONITORING.value,
            lambda: AccountStateService(db).process_expired_grace_periods(),
            trigger=trigger,
        )


async def generate_daily_metrics_task(
    ctx: dict[str, Any], metrics_date: str | None = None, trigger: str = "cron"
) -> int:
    """Background task: roll up recovery metrics for one day.

    Defaults to yesterday (UTC). Runs daily at 00:30, and prunes the job
    execution log afterwards.
    """
    day = date.fromisoformat(metrics_date) if metrics_date else utc_now().date() - timedelta(days=1)
    with session_scope() as db:
        jobs = JobLogService(db)
        records = jobs.run(
            JobType.ANALYTICS_GENERATION.value,
            lambda: RecoveryAnalyticsService(db).generate_daily_metrics(day, SYSTEM_CALLER),
            trigger=trigger,
        )
        if not records:
            logger.info("No payment failures on %s; no metrics written", day.isoformat())
        jobs.prune()
        return len(records)


class WorkerSettings:
    functions = [
        process_due_failures_task,
        process_due_communications_task,
        process_expired_grace_periods_task,
        generate_daily_metrics_task,
    ]
    cron_jobs = [
        cron(process_due_failures_task, minute=EVERY_FIVE_MINUTES),
        cron(process_due_communications_task, minute=EVERY_FIVE_MINUTES),
        cron(process_expired_grace_periods_task, minute={0}),  # hourly
        cron(generate_daily_metrics_task, hour=0, minute=30),  # daily at 00:30
    ]
    redis_settings = redis_settings
