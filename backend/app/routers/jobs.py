"""Background job API endpoints: manual triggers and the execution log."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import Caller, get_current_caller, require_admin
from app.core.database import get_db
from app.models.job_execution import JobType
from app.models.shared import utc_now
from app.schemas.job_execution import (
    JobExecutionResponse,
    JobTriggerRequest,
    JobTriggerResponse,
    SystemHealthResponse,
)
from app.services.job_log_service import JobLogService, validate_job_type
from app.tasks import (
    enqueue_daily_metrics,
    enqueue_dunning_sweep,
    enqueue_grace_period_check,
    enqueue_retry_sweep,
)

router = APIRouter()

ADMIN_ONLY = {401: {"description": "Unauthorized"}, 403: {"description": "Admin role required"}}


def get_job_log_service(db: Session = Depends(get_db)) -> JobLogService:
    return JobLogService(db)


@router.post(
    "/{job_type}/trigger",
    response_model=JobTriggerResponse,
    status_code=202,
    summary="Run a background job now",
    responses={**ADMIN_ONLY, 422: {"description": "Unknown job type"}},
)
async def trigger_job(
    job_type: str,
    data: JobTriggerRequest | None = None,
    caller: Caller = Depends(get_current_caller),
) -> JobTriggerResponse:
    """Queue the job on the worker instead of waiting for its cron slot."""
    require_admin(caller, f"trigger {job_type}")
    validate_job_type(job_type)

    if job_type == JobType.PAYMENT_RETRY.value:
        job = await enqueue_retry_sweep()
    elif job_type == JobType.DUNNING_CAMPAIGNS.value:
        job = await enqueue_dunning_sweep()
    elif job_type == JobType.GRACE_PERIOD_MONITORING.value:
        job = await enqueue_grace_period_check()
    else:
        day = (data.metrics_date if data else None) or utc_now().date() - timedelta(days=1)
        job = await enqueue_daily_metrics(day.isoformat())

    # arq returns None when a job with the same id is already queued
    return JobTriggerResponse(job_type=job_type, job_id=job.job_id if job is not None else None)


@router.get(
    "/history",
    response_model=list[JobExecutionResponse],
    summary="List job executions",
    responses={**ADMIN_ONLY, 422: {"description": "Unknown job type"}},
)
async def get_job_history(
    job_type: str | None = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=1000),
    service: JobLogService = Depends(get_job_log_service),
    caller: Caller = Depends(get_current_caller),
) -> list[JobExecutionResponse]:
    """Newest first."""
    return [
        JobExecutionResponse.model_validate(run)
        for run in service.get_history(caller, job_type=job_type, skip=skip, limit=limit)
    ]


@router.get(
    "/health",
    response_model=SystemHealthResponse,
    summary="Get background job health",
    responses=ADMIN_ONLY,
)
async def get_system_health(
    service: JobLogService = Depends(get_job_log_service),
    caller: Caller = Depends(get_current_caller),
) -> SystemHealthResponse:
    return SystemHealthResponse(**service.get_system_health(caller))
