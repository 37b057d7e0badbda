"""DunningCampaign API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.auth import SYSTEM_CALLER, Caller, get_current_caller
from app.core.config import settings
from app.core.database import get_db
from app.schemas.dunning_campaign import (
    CommunicationEvent,
    DunningCampaignCreate,
    DunningCampaignFilter,
    DunningCampaignResponse,
    DunningCampaignUpdate,
    DunningCommunicationResponse,
)
from app.services.dunning_service import DunningService
from app.services.payment_processor import verify_signature

router = APIRouter()

SIGNATURE_HEADER = "X-Recovery-Signature"


def get_dunning_service(db: Session = Depends(get_db)) -> DunningService:
    return DunningService(db)


@router.post(
    "/",
    response_model=DunningCampaignResponse,
    status_code=201,
    summary="Create dunning campaign",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        404: {"description": "Payment failure not found"},
        409: {"description": "Payment failure is no longer open"},
        422: {"description": "Validation error"},
    },
)
async def create_dunning_campaign(
    data: DunningCampaignCreate,
    service: DunningService = Depends(get_dunning_service),
    caller: Caller = Depends(get_current_caller),
) -> DunningCampaignResponse:
    """Create a dunning campaign, or return the failure's open campaign."""
    return DunningCampaignResponse.model_validate(service.create_campaign(data, caller))


@router.get(
    "/",
    response_model=list[DunningCampaignResponse],
    summary="List dunning campaigns",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Access denied"}},
)
async def list_dunning_campaigns(
    customer_id: UUID | None = None,
    payment_failure_id: UUID | None = None,
    campaign_type: str | None = None,
    status: str | None = Query(default=None, pattern=r"^(active|paused|completed|canceled)$"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    order_by: str | None = Query(default=None),
    service: DunningService = Depends(get_dunning_service),
    caller: Caller = Depends(get_current_caller),
) -> list[DunningCampaignResponse]:
    """List dunning campaigns with optional filters."""
    filters = DunningCampaignFilter(
        customer_id=customer_id,
        payment_failure_id=payment_failure_id,
        campaign_type=campaign_type,
        status=status,
        skip=skip,
        limit=limit,
        order_by=order_by,
    )
    return [
        DunningCampaignResponse.model_validate(c) for c in service.list_campaigns(filters, caller)
    ]


@router.get(
    "/{campaign_id}",
    response_model=DunningCampaignResponse,
    summary="Get dunning campaign",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Access denied"},
        404: {"description": "Dunning campaign not found"},
    },
)
async def get_dunning_campaign(
    campaign_id: UUID,
    service: DunningService = Depends(get_dunning_service),
    caller: Caller = Depends(get_current_caller),
) -> DunningCampaignResponse:
    """Get a dunning campaign by ID."""
    return DunningCampaignResponse.model_validate(service.get_campaign(campaign_id, caller))


@router.put(
    "/{campaign_id}",
    response_model=DunningCampaignResponse,
    summary="Update dunning campaign",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        404: {"description": "Dunning campaign not found"},
        409: {"description": "Campaign already completed or canceled"},
        422: {"description": "Validation error"},
    },
)
async def update_dunning_campaign(
    campaign_id: UUID,
    data: DunningCampaignUpdate,
    service: DunningService = Depends(get_dunning_service),
    caller: Caller = Depends(get_current_caller),
) -> DunningCampaignResponse:
    """Update status, channels or metadata. Metadata is merged, not replaced."""
    return DunningCampaignResponse.model_validate(
        service.update_campaign(campaign_id, data, caller)
    )


@router.post(
    "/{campaign_id}/advance",
    response_model=DunningCampaignResponse,
    summary="Advance dunning campaign",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        404: {"description": "Dunning campaign not found"},
        409: {"description": "Campaign is not active or the step is already being sent"},
    },
)
async def advance_dunning_campaign(
    campaign_id: UUID,
    service: DunningService = Depends(get_dunning_service),
    caller: Caller = Depends(get_current_caller),
) -> DunningCampaignResponse:
    """Send the current step now instead of waiting for the sweep."""
    return DunningCampaignResponse.model_validate(service.advance_step(campaign_id, caller))


@router.get(
    "/{campaign_id}/communications",
    response_model=list[DunningCommunicationResponse],
    summary="List campaign communications",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Access denied"},
        404: {"description": "Dunning campaign not found"},
    },
)
async def list_campaign_communications(
    campaign_id: UUID,
    service: DunningService = Depends(get_dunning_service),
    caller: Caller = Depends(get_current_caller),
) -> list[DunningCommunicationResponse]:
    return [
        DunningCommunicationResponse.model_validate(c)
        for c in service.list_communications(campaign_id, caller)
    ]


@router.post(
    "/communications/{communication_id}/events",
    response_model=DunningCommunicationResponse,
    summary="Notifier engagement event",
    responses={
        401: {"description": "Invalid webhook signature"},
        404: {"description": "Communication not found"},
        409: {"description": "Communication already bounced or failed"},
        422: {"description": "Validation error"},
    },
)
async def communication_event(
    communication_id: UUID,
    request: Request,
    service: DunningService = Depends(get_dunning_service),
) -> DunningCommunicationResponse:
    """Signed notifier webhook reporting delivery and engagement."""
    payload = await request.body()
    if not verify_signature(
        payload, request.headers.get(SIGNATURE_HEADER), settings.NOTIFIER_WEBHOOK_SECRET
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        event = CommunicationEvent.model_validate_json(payload)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None
    communication = service.record_communication_event(communication_id, event, SYSTEM_CALLER)
    return DunningCommunicationResponse.model_validate(communication)
