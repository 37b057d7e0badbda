"""Append-only store for audit trail entries."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.sorting import apply_order_by
from app.models.audit_log import AuditLog
from app.models.shared import generate_uuid
from app.schemas.audit_log import AuditLogFilter


class AuditLogRepository:
    """Entries are only ever inserted; there is no update or delete."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        resource_type: str,
        resource_id: UUID,
        action: str,
        changes: dict[str, Any],
        actor_type: str,
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            id=generate_uuid(),
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            changes=changes,
            actor_type=actor_type,
            actor_id=actor_id,
            metadata_=metadata,
        )
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def get_by_resource(
        self,
        resource_type: str,
        resource_id: UUID,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditLog]:
        """Trail of one entity, newest first."""
        query = self.db.query(AuditLog).filter(
            AuditLog.resource_type == resource_type,
            AuditLog.resource_id == resource_id,
        )
        return apply_order_by(query, AuditLog, None).offset(skip).limit(limit).all()

    def get_all(self, filters: AuditLogFilter | None = None) -> list[AuditLog]:
        filters = filters or AuditLogFilter()
        query = self.db.query(AuditLog)
        for column, value in (
            (AuditLog.resource_type, filters.resource_type),
            (AuditLog.resource_id, filters.resource_id),
            (AuditLog.action, filters.action),
            (AuditLog.actor_type, filters.actor_type),
            (AuditLog.actor_id, filters.actor_id),
        ):
            if value is not None:
                query = query.filter(column == value)
        if filters.start_date is not None:
            query = query.filter(AuditLog.created_at >= filters.start_date)
        if filters.end_date is not None:
            query = query.filter(AuditLog.created_at <= filters.end_date)
        query = apply_order_by(query, AuditLog, filters.order_by)
        return query.offset(filters.skip).limit(filters.limit).all()
