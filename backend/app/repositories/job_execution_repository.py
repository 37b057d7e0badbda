"""JobExecution repository for data access."""

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.models.job_execution import JobExecution


class JobExecutionRepository:
    """Repository for JobExecution model."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> JobExecution:
        execution = JobExecution(**fields)
        self.db.add(execution)
        self.db.commit()
        self.db.refresh(execution)
        return execution

    def get_all(
        self, job_type: str | None = None, skip: int = 0, limit: int = 50
    ) -> list[JobExecution]:
        """Newest runs first."""
        query = self.db.query(JobExecution)
        if job_type is not None:
            query = query.filter(JobExecution.job_type == job_type)
        return (
            query.order_by(JobExecution.started_at.desc(), JobExecution.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def get_started_since(self, since: datetime) -> list[JobExecution]:
        return (
            self.db.query(JobExecution)
            .filter(JobExecution.started_at >= since)
            .order_by(JobExecution.started_at.desc())
            .all()
        )

    def delete_started_before(self, cutoff: datetime) -> int:
        deleted = (
            self.db.query(JobExecution)
            .filter(JobExecution.started_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return int(deleted)

    def get_last_success(self, job_type: str) -> JobExecution | None:
        return (
            self.db.query(JobExecution)
            .filter(JobExecution.job_type == job_type, JobExecution.success.is_(True))
            .order_by(JobExecution.finished_at.desc())
            .first()
        )
