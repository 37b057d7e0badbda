import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from app.core.config import settings
from app.core.exceptions import InvalidStateError, RecoveryError
from app.routers import (
    account_states,
    audit_logs,
    dunning_campaigns,
    jobs,
    payment_failures,
    recovery_analytics,
)

logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "Payment Failures", "description": "Track failed payments and retry them."},
    {"name": "Dunning", "description": "Customer outreach campaigns for failed payments."},
    {"name": "Account States", "description": "Access tier and feature restrictions."},
    {"name": "Recovery Analytics", "description": "Daily recovery metrics."},
    {"name": "Audit Logs", "description": "Query the audit trail for recovery entities."},
    {"name": "Jobs", "description": "Trigger background sweeps and inspect their runs."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Payment recovery API. Retries failed charges, runs dunning campaigns "
        "and restricts account access while payments remain outstanding."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RecoveryError)
async def recovery_error_handler(request: Request, exc: RecoveryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    current = None
    if isinstance(exc, InvalidStateError) and exc.current is not None:
        current = _render_current(exc.current)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code, "current": current},
    )


def _render_current(entity: object) -> object:
    state = inspect(entity, raiseerr=False)
    if state is None or not hasattr(state, "mapper"):
        return jsonable_encoder(entity)
    # Only attributes already loaded; the request session may be closed by now
    loaded = state.dict
    return jsonable_encoder(
        {
            attr.columns[0].name: loaded[attr.key]
            for attr in state.mapper.column_attrs
            if attr.key in loaded
        }
    )


app.include_router(
    payment_failures.router, prefix="/v1/payment_failures", tags=["Payment Failures"]
)
app.include_router(
    dunning_campaigns.router,
    prefix="/v1/dunning_campaigns",
    tags=["Dunning"],
)
app.include_router(
    account_states.router,
    prefix="/v1/account_states",
    tags=["Account States"],
)
app.include_router(
    recovery_analytics.router,
    prefix="/v1/recovery_analytics",
    tags=["Recovery Analytics"],
)
app.include_router(
    audit_logs.router,
    prefix="/v1/audit_logs",
    tags=["Audit Logs"],
)
app.include_router(jobs.router, prefix="/v1/jobs", tags=["Jobs"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "status": "running",
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
