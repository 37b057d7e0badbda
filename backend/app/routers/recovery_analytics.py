"""Recovery analytics API endpoints."""

from datetime import date

from fastapi import APIRouter, Depends
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.auth import Caller, get_current_caller
from app.core.database import get_db
from app.schemas.recovery_analytics import (
    GenerateMetricsRequest,
    RecoveryAnalyticsFilter,
    RecoveryAnalyticsResponse,
    RecoverySummary,
)
from app.services.recovery_analytics_service import RecoveryAnalyticsService

router = APIRouter()


def get_recovery_analytics_service(db: Session = Depends(get_db)) -> RecoveryAnalyticsService:
    return RecoveryAnalyticsService(db)


def get_analytics_filter(
    start_date: date,
    end_date: date,
    campaign_type: str | None = None,
    customer_segment: str | None = None,
) -> RecoveryAnalyticsFilter:
    try:
        return RecoveryAnalyticsFilter(
            start_date=start_date,
            end_date=end_date,
            campaign_type=campaign_type,
            customer_segment=customer_segment,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None


@router.post(
    "/generate",
    response_model=list[RecoveryAnalyticsResponse],
    summary="Generate daily recovery metrics",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Admin role required"}},
)
async def generate_daily_metrics(
    data: GenerateMetricsRequest,
    service: RecoveryAnalyticsService = Depends(get_recovery_analytics_service),
    caller: Caller = Depends(get_current_caller),
) -> list[RecoveryAnalyticsResponse]:
    """Recompute the metrics for one day; safe to re-run."""
    return [
        RecoveryAnalyticsResponse.model_validate(r)
        for r in service.generate_daily_metrics(data.date, caller)
    ]


@router.get(
    "/",
    response_model=list[RecoveryAnalyticsResponse],
    summary="List recovery metrics",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        422: {"description": "Validation error"},
    },
)
async def list_recovery_analytics(
    filters: RecoveryAnalyticsFilter = Depends(get_analytics_filter),
    service: RecoveryAnalyticsService = Depends(get_recovery_analytics_service),
    caller: Caller = Depends(get_current_caller),
) -> list[RecoveryAnalyticsResponse]:
    return [
        RecoveryAnalyticsResponse.model_validate(r) for r in service.get_analytics(filters, caller)
    ]


@router.get(
    "/summary",
    response_model=RecoverySummary,
    summary="Recovery metrics summary",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        422: {"description": "Validation error"},
    },
)
async def recovery_summary(
    filters: RecoveryAnalyticsFilter = Depends(get_analytics_filter),
    service: RecoveryAnalyticsService = Depends(get_recovery_analytics_service),
    caller: Caller = Depends(get_current_caller),
) -> RecoverySummary:
    return service.get_summary(filters, caller)
