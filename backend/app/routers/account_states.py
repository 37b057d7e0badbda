"""AccountState API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import Caller, get_current_caller
from app.core.database import get_db
from app.schemas.account_state import (
    AccountStateResponse,
    AccountStateUpdate,
    FeatureAccessResponse,
    FeatureRestrictionsResponse,
)
from app.services.account_state_service import AccountStateService

router = APIRouter()


def get_account_state_service(db: Session = Depends(get_db)) -> AccountStateService:
    return AccountStateService(db)


@router.get(
    "/{customer_id}",
    response_model=AccountStateResponse,
    summary="Get current account state",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Access denied"}},
)
async def get_account_state(
    customer_id: UUID,
    service: AccountStateService = Depends(get_account_state_service),
    caller: Caller = Depends(get_current_caller),
) -> AccountStateResponse:
    return AccountStateResponse.model_validate(service.get_account_state(customer_id, caller))


@router.get(
    "/{customer_id}/history",
    response_model=list[AccountStateResponse],
    summary="Get account state history",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Access denied"}},
)
async def get_account_state_history(
    customer_id: UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    service: AccountStateService = Depends(get_account_state_service),
    caller: Caller = Depends(get_current_caller),
) -> list[AccountStateResponse]:
    """Newest first."""
    return [
        AccountStateResponse.model_validate(row)
        for row in service.get_history(customer_id, caller, skip=skip, limit=limit)
    ]


@router.get(
    "/{customer_id}/feature_restrictions",
    response_model=FeatureRestrictionsResponse,
    summary="Get feature restrictions",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Access denied"}},
)
async def get_feature_restrictions(
    customer_id: UUID,
    service: AccountStateService = Depends(get_account_state_service),
    caller: Caller = Depends(get_current_caller),
) -> FeatureRestrictionsResponse:
    return FeatureRestrictionsResponse(**service.get_feature_restrictions(customer_id, caller))


@router.get(
    "/{customer_id}/features/{feature}",
    response_model=FeatureAccessResponse,
    summary="Check access to a feature",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Access denied"},
        422: {"description": "Unknown feature"},
    },
)
async def check_feature_access(
    customer_id: UUID,
    feature: str,
    service: AccountStateService = Depends(get_account_state_service),
    caller: Caller = Depends(get_current_caller),
) -> FeatureAccessResponse:
    return FeatureAccessResponse(**service.check_feature_access(customer_id, feature, caller))


@router.put(
    "/",
    response_model=AccountStateResponse,
    summary="Update account state",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        404: {"description": "Account state not found"},
        409: {"description": "Stale account state or transition needs manual override"},
        422: {"description": "Validation error"},
    },
)
async def update_account_state(
    data: AccountStateUpdate,
    service: AccountStateService = Depends(get_account_state_service),
    caller: Caller = Depends(get_current_caller),
) -> AccountStateResponse:
    """Admin transition; appends a new row rather than editing the current one."""
    return AccountStateResponse.model_validate(service.update_account_state(data, caller))
