"""Execution log of the background sweeps.

Each worker task runs through ``JobLogService.run``, which times the sweep
and stores its counts. A sweep that raises is still logged, as unsuccessful
with the error message, before the error propagates to the worker.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from app.core.auth import Caller, require_admin
from app.core.config import settings
from app.core.exceptions import InputValidationError
from app.models.job_execution import JobExecution, JobType
from app.models.shared import utc_now
from app.repositories.job_execution_repository import JobExecutionRepository
from app.schemas.payment_failure import SweepResult

logger = logging.getLogger(__name__)

JOB_TYPES = tuple(job.value for job in JobType)

T = TypeVar("T")


def _counts(result: Any) -> dict[str, Any]:
    """Normalise what a sweep returns into processed/succeeded/failed counts."""
    if isinstance(result, SweepResult):
        return {
            "processed": result.processed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "metadata_": {"skipped": result.skipped, "abandoned": result.abandoned},
        }
    if isinstance(result, int):
        return {"processed": result, "succeeded": result, "failed": 0}
    if isinstance(result, (list, tuple)):
        return {"processed": len(result), "succeeded": len(result), "failed": 0}
    return {}


def validate_job_type(job_type: str) -> str:
    if job_type not in JOB_TYPES:
        raise InputValidationError(
            f"Unknown job type: {job_type}. Expected one of {', '.join(JOB_TYPES)}"
        )
    return job_type


class JobLogService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = JobExecutionRepository(db)

    def run(self, job_type: str, sweep: Callable[[], T], trigger: str = "cron") -> T:
        """Run ``sweep`` and log the execution."""
        validate_job_type(job_type)
        started_at = utc_now()
        clock = time.monotonic()
        try:
            result = sweep()
        except Exception as exc:
            self.db.rollback()
            self._log(job_type, trigger, started_at, clock, success=False, errors=[repr(exc)])
            logger.error("Job %s failed: %s", job_type, exc)
            raise
        self._log(job_type, trigger, started_at, clock, success=True, **_counts(result))
        return result

    def get_history(
        self,
        caller: Caller,
        job_type: str | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[JobExecution]:
        require_admin(caller, "view job history")
        if job_type is not None:
            validate_job_type(job_type)
        return self.repo.get_all(job_type=job_type, skip=skip, limit=limit)

    def get_system_health(self, caller: Caller, now: datetime | None = None) -> dict[str, Any]:
        """Last successful run per job type and today's run counts (UTC)."""
        require_admin(caller, "view job health")
        now = now or utc_now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = self.repo.get_started_since(start_of_day)
        successful = sum(1 for run in today if run.success)

        last_success: dict[str, datetime | None] = {}
        for job_type in JOB_TYPES:
            run = self.repo.get_last_success(job_type)
            last_success[job_type] = run.finished_at if run is not None else None  # type: ignore[assignment]

        return {
            "last_success": last_success,
            "total_runs_today": len(today),
            "successful_runs_today": successful,
            "failed_runs_today": len(today) - successful,
        }

    def prune(self, now: datetime | None = None) -> int:
        """Delete runs older than the retention window."""
        now = now or utc_now()
        cutoff = now - timedelta(days=settings.JOB_HISTORY_RETENTION_DAYS)
        deleted = self.repo.delete_started_before(cutoff)
        if deleted:
            logger.info("Pruned %d job executions older than %s", deleted, cutoff.date())
        return deleted

    def _log(
        self,
        job_type: str,
        trigger: str,
        started_at: datetime,
        clock: float,
        success: bool,
        errors: list[str] | None = None,
        **counts: Any,
    ) -> JobExecution:
        return self.repo.create(
            job_type=job_type,
            trigger=trigger,
            started_at=started_at,
            finished_at=utc_now(),
            duration_ms=int((time.monotonic() - clock) * 1000),
            success=success,
            errors=errors or [],
            **counts,
        )
