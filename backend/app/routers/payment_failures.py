"""PaymentFailure API endpoints."""

from typing import TypeVar
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.core.auth import SYSTEM_CALLER, Caller, get_current_caller
from app.core.config import settings
from app.core.database import get_db
from app.schemas.payment_failure import (
    FailureActionRequest,
    PaymentFailedEvent,
    PaymentFailureFilter,
    PaymentFailureResponse,
    PaymentSucceededEvent,
    RecordFailureResult,
    RetryPaymentBody,
    RetryPaymentRequest,
    RetryPaymentResult,
)
from app.schemas.payment_method_health import PaymentMethodHealthResponse
from app.services.payment_failure_service import PaymentFailureService
from app.services.payment_method_health_service import PaymentMethodHealthService
from app.services.payment_processor import verify_signature

router = APIRouter()

SIGNATURE_HEADER = "X-Recovery-Signature"

EventT = TypeVar("EventT", bound=BaseModel)


def get_payment_failure_service(db: Session = Depends(get_db)) -> PaymentFailureService:
    return PaymentFailureService(db)


async def _signed_event(request: Request, model: type[EventT]) -> EventT:
    payload = await request.body()
    if not verify_signature(
        payload, request.headers.get(SIGNATURE_HEADER), settings.PROCESSOR_WEBHOOK_SECRET
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        return model.model_validate_json(payload)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from None


@router.get(
    "/",
    response_model=list[PaymentFailureResponse],
    summary="List payment failures",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Access denied"}},
)
async def list_payment_failures(
    customer_id: UUID | None = None,
    subscription_id: UUID | None = None,
    status: str | None = Query(
        default=None, pattern=r"^(pending|retrying|resolved|escalated|abandoned)$"
    ),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    order_by: str | None = Query(default=None),
    service: PaymentFailureService = Depends(get_payment_failure_service),
    caller: Caller = Depends(get_current_caller),
) -> list[PaymentFailureResponse]:
    """List payment failures. Customers only see their own."""
    filters = PaymentFailureFilter(
        customer_id=customer_id,
        subscription_id=subscription_id,
        status=status,
        skip=skip,
        limit=limit,
        order_by=order_by,
    )
    return [
        PaymentFailureResponse.model_validate(f) for f in service.list_failures(filters, caller)
    ]


@router.get(
    "/{failure_id}",
    response_model=PaymentFailureResponse,
    summary="Get payment failure",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Access denied"},
        404: {"description": "Payment failure not found"},
    },
)
async def get_payment_failure(
    failure_id: UUID,
    service: PaymentFailureService = Depends(get_payment_failure_service),
    caller: Caller = Depends(get_current_caller),
) -> PaymentFailureResponse:
    return PaymentFailureResponse.model_validate(service.get_failure(failure_id, caller))


@router.post(
    "/{failure_id}/retry",
    response_model=RetryPaymentResult,
    summary="Retry a failed payment",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Access denied"},
        404: {"description": "Payment failure not found"},
        409: {"description": "Payment failure is resolved, in flight or out of attempts"},
        422: {"description": "Validation error"},
    },
)
async def retry_payment(
    failure_id: UUID,
    data: RetryPaymentBody,
    service: PaymentFailureService = Depends(get_payment_failure_service),
    caller: Caller = Depends(get_current_caller),
) -> RetryPaymentResult:
    """Charge the failure's payment method once.

    A declined charge is not an error: the response reports ``success=false``
    with the processor's error code and the next scheduled retry.
    """
    outcome = service.retry_payment(
        RetryPaymentRequest(failure_id=failure_id, **data.model_dump()), caller
    )
    return RetryPaymentResult(
        success=outcome.success,
        failure=PaymentFailureResponse.model_validate(outcome.failure),
        transaction_id=outcome.transaction_id,
        error_code=outcome.error_code,
        next_retry_at=outcome.failure.next_retry_at,  # type: ignore[arg-type]
    )


@router.post(
    "/{failure_id}/abandon",
    response_model=PaymentFailureResponse,
    summary="Abandon payment failure",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        404: {"description": "Payment failure not found"},
        409: {"description": "Payment failure cannot be abandoned"},
    },
)
async def abandon_payment_failure(
    failure_id: UUID,
    data: FailureActionRequest,
    service: PaymentFailureService = Depends(get_payment_failure_service),
    caller: Caller = Depends(get_current_caller),
) -> PaymentFailureResponse:
    failure = service.abandon_failure(failure_id, data.reason, caller)
    return PaymentFailureResponse.model_validate(failure)


@router.post(
    "/{failure_id}/reset",
    response_model=PaymentFailureResponse,
    summary="Reset payment failure",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Admin role required"},
        404: {"description": "Payment failure not found"},
        409: {"description": "Only escalated or abandoned failures can be reset"},
    },
)
async def reset_payment_failure(
    failure_id: UUID,
    data: FailureActionRequest,
    service: PaymentFailureService = Depends(get_payment_failure_service),
    caller: Caller = Depends(get_current_caller),
) -> PaymentFailureResponse:
    """Start a fresh retry cycle for an escalated or abandoned failure."""
    failure = service.reset_failure(failure_id, caller, data.reason)
    return PaymentFailureResponse.model_validate(failure)


@router.post(
    "/events/payment_failed",
    response_model=RecordFailureResult,
    summary="Payment processor failure event",
    responses={
        401: {"description": "Invalid webhook signature"},
        422: {"description": "Validation error"},
    },
)
async def payment_failed_event(
    request: Request,
    service: PaymentFailureService = Depends(get_payment_failure_service),
) -> RecordFailureResult:
    """Signed processor webhook. Redelivered events return the original failure."""
    event = await _signed_event(request, PaymentFailedEvent)
    result = service.record_failure(event, SYSTEM_CALLER)
    if result.failure is None:
        raise HTTPException(status_code=409, detail="Event already processed")
    return RecordFailureResult(
        failure=PaymentFailureResponse.model_validate(result.failure),
        created=result.created,
        duplicate=result.duplicate,
    )


@router.post(
    "/events/payment_succeeded",
    response_model=PaymentFailureResponse | None,
    summary="Payment processor success event",
    responses={
        401: {"description": "Invalid webhook signature"},
        422: {"description": "Validation error"},
    },
)
async def payment_succeeded_event(
    request: Request,
    service: PaymentFailureService = Depends(get_payment_failure_service),
) -> PaymentFailureResponse | None:
    """Signed processor webhook. Returns the resolved failure, or null if none was open."""
    event = await _signed_event(request, PaymentSucceededEvent)
    failure = service.record_payment_success(event, SYSTEM_CALLER)
    return PaymentFailureResponse.model_validate(failure) if failure is not None else None


@router.get(
    "/customers/{customer_id}/payment_methods",
    response_model=list[PaymentMethodHealthResponse],
    summary="Get payment method health",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Access denied"}},
)
async def list_payment_method_health(
    customer_id: UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
) -> list[PaymentMethodHealthResponse]:
    """Charge history and block status of each card the customer was charged on."""
    service = PaymentMethodHealthService(db)
    return [
        PaymentMethodHealthResponse.model_validate(h)
        for h in service.list_for_customer(customer_id, caller)
    ]
