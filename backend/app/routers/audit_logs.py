"""Audit log API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.auth import Caller, get_current_caller
from app.core.database import get_db
from app.schemas.audit_log import AuditLogFilter, AuditLogResponse
from app.services.audit_service import AuditService

router = APIRouter()

ADMIN_ONLY = {401: {"description": "Unauthorized"}, 403: {"description": "Admin role required"}}


def get_audit_service(db: Session = Depends(get_db)) -> AuditService:
    return AuditService(db)


def get_audit_filter(
    resource_type: str | None = None,
    resource_id: UUID | None = None,
    action: str | None = None,
    actor_type: str | None = None,
    actor_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    order_by: str | None = None,
) -> AuditLogFilter:
    try:
        return AuditLogFilter(
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            actor_type=actor_type,
            actor_id=actor_id,
            start_date=start_date,
            end_date=end_date,
            skip=skip,
            limit=limit,
            order_by=order_by,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None


@router.get(
    "/",
    response_model=list[AuditLogResponse],
    summary="List audit logs",
    responses={**ADMIN_ONLY, 422: {"description": "Validation error"}},
)
async def list_audit_logs(
    filters: AuditLogFilter = Depends(get_audit_filter),
    service: AuditService = Depends(get_audit_service),
    caller: Caller = Depends(get_current_caller),
) -> list[AuditLogResponse]:
    """Search the audit trail across all recovery entities."""
    return [AuditLogResponse.model_validate(e) for e in service.list_entries(filters, caller)]


@router.get(
    "/{resource_type}/{resource_id}",
    response_model=list[AuditLogResponse],
    summary="Get audit trail for a resource",
    responses={**ADMIN_ONLY, 422: {"description": "Unknown resource type"}},
)
async def get_resource_audit_trail(
    resource_type: str,
    resource_id: UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    service: AuditService = Depends(get_audit_service),
    caller: Caller = Depends(get_current_caller),
) -> list[AuditLogResponse]:
    entries = service.get_trail(resource_type, resource_id, caller, skip=skip, limit=limit)
    return [AuditLogResponse.model_validate(e) for e in entries]
