"""Caller identity and role checks.

Tokens are issued by the surrounding platform's auth service; this module only
verifies them and turns the claims into a ``Caller``.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from fastapi import HTTPException, Request

from app.core.config import settings
from app.core.exceptions import AccessDeniedError

security_logger = logging.getLogger("app.security")

ROLE_ADMIN = "admin"
ROLE_CUSTOMER = "customer"
ROLE_SYSTEM = "system"

TOKEN_TYPE = "recovery_access"


@dataclass(frozen=True)
class Caller:
    """Resolved identity of whoever invoked an operation."""

    actor_id: str
    role: str
    customer_id: UUID | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SYSTEM)

    @property
    def actor_type(self) -> str:
        return self.role

    def owns(self, customer_id: UUID) -> bool:
        return self.role == ROLE_CUSTOMER and self.customer_id == customer_id


SYSTEM_CALLER = Caller(actor_id="recovery-worker", role=ROLE_SYSTEM)


def require_admin(caller: Caller, action: str) -> None:
    """Raise AccessDeniedError unless the caller is an admin (or the system)."""
    if caller.is_admin:
        return
    security_logger.warning(
        "Access denied: %s %s attempted admin-only action %s",
        caller.role,
        caller.actor_id,
        action,
    )
    raise AccessDeniedError(f"Admin role required for {action}")


def require_customer_access(caller: Caller, customer_id: UUID, action: str) -> None:
    """Raise AccessDeniedError unless the caller owns ``customer_id`` or is an admin."""
    if caller.is_admin or caller.owns(customer_id):
        return
    security_logger.warning(
        "Access denied: %s %s attempted %s on customer %s",
        caller.role,
        caller.actor_id,
        action,
        customer_id,
    )
    raise AccessDeniedError(f"Not allowed to {action} for this customer")


def scope_customer_filter(requested: UUID | None, caller: Caller, action: str) -> UUID | None:
    """Customer filter for list operations.

    Admins may filter by any customer or none; customers always see only
    their own records.
    """
    if caller.is_admin:
        return requested
    if requested is not None and requested != caller.customer_id:
        require_customer_access(caller, requested, action)
    if caller.customer_id is None:
        raise AccessDeniedError(f"Not allowed to {action}")
    return caller.customer_id


def issue_token(
    actor_id: str,
    role: str,
    customer_id: UUID | None = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Sign a caller token. Used by operator tooling and tests."""
    payload = {
        "sub": actor_id,
        "role": role,
        "customer_id": str(customer_id) if customer_id else None,
        "type": TOKEN_TYPE,
        "exp": datetime.now(UTC) + expires_in,
    }
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)


def decode_token(token: str) -> Caller:
    """Verify a caller token.

    Raises jwt.ExpiredSignatureError or jwt.InvalidTokenError on failure.
    """
    payload = jwt.decode(
        token, settings.AUTH_JWT_SECRET, algorithms=[settings.AUTH_JWT_ALGORITHM]
    )
    if payload.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError("Invalid token type")
    role = payload.get("role")
    if role not in (ROLE_ADMIN, ROLE_CUSTOMER):
        raise jwt.InvalidTokenError("Unknown role")
    raw_customer_id = payload.get("customer_id")
    customer_id = UUID(raw_customer_id) if raw_customer_id else None
    if role == ROLE_CUSTOMER and customer_id is None:
        raise jwt.InvalidTokenError("Customer token without customer_id")
    return Caller(actor_id=str(payload["sub"]), role=role, customer_id=customer_id)


def get_current_caller(request: Request) -> Caller:
    """FastAPI dependency: resolve the caller from the bearer token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Authorization header is required")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = auth_header[7:]
    if not token:
        raise HTTPException(status_code=401, detail="Token is required")

    try:
        return decode_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired") from None
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token") from None
