"""Audit service for recording state changes to recovery entities."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.auth import SYSTEM_CALLER, Caller, require_admin
from app.core.exceptions import InputValidationError
from app.models.audit_log import AuditLog
from app.repositories.audit_log_repository import AuditLogRepository
from app.schemas.audit_log import AUDITED_RESOURCE_TYPES, AuditLogFilter


class AuditService:
    """Service for recording audit trail entries."""

    def __init__(self, db: Session):
        self.repo = AuditLogRepository(db)

    def list_entries(self, filters: AuditLogFilter, caller: Caller) -> list[AuditLog]:
        require_admin(caller, "list audit logs")
        return self.repo.get_all(filters)

    def get_trail(
        self,
        resource_type: str,
        resource_id: UUID,
        caller: Caller,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditLog]:
        """Every recorded change to one entity, newest first."""
        require_admin(caller, "view audit trail")
        if resource_type not in AUDITED_RESOURCE_TYPES:
            raise InputValidationError(f"Unknown resource type: {resource_type}")
        return self.repo.get_by_resource(resource_type, resource_id, skip=skip, limit=limit)

    def log_create(
        self,
        resource_type: str,
        resource_id: UUID,
        caller: Caller = SYSTEM_CALLER,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Log a resource creation event."""
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action="created",
            changes=_jsonable(data or {}),
            actor_type=caller.actor_type,
            actor_id=caller.actor_id,
        )

    def log_update(
        self,
        resource_type: str,
        resource_id: UUID,
        caller: Caller = SYSTEM_CALLER,
        old_data: dict[str, Any] | None = None,
        new_data: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        """Log a resource update event, auto-diffing changed fields."""
        old = _jsonable(old_data or {})
        new = _jsonable(new_data or {})
        changes: dict[str, Any] = {}
        for key in set(old.keys()) | set(new.keys()):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = {"old": old_val, "new": new_val}
        if not changes:
            return
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action="updated",
            changes=changes,
            actor_type=caller.actor_type,
            actor_id=caller.actor_id,
            metadata={"reason": reason} if reason else None,
        )

    def log_status_change(
        self,
        resource_type: str,
        resource_id: UUID,
        old_status: str,
        new_status: str,
        caller: Caller = SYSTEM_CALLER,
        reason: str | None = None,
    ) -> None:
        """Log a status change event."""
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action="status_changed",
            changes={"status": {"old": old_status, "new": new_status}},
            actor_type=caller.actor_type,
            actor_id=caller.actor_id,
            metadata={"reason": reason} if reason else None,
        )


def _jsonable(data: dict[str, Any]) -> dict[str, Any]:
    """Stringify values the JSON column cannot store (UUIDs, datetimes, Decimals)."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if value is None or isinstance(value, (str, int, float, bool, list, dict)):
            result[key] = value
        else:
            result[key] = str(value)
    return result
