"""DunningCommunication repository for data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.dunning_communication import DunningCommunication


class DunningCommunicationRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, communication_id: UUID) -> DunningCommunication | None:
        return (
            self.db.query(DunningCommunication)
            .filter(DunningCommunication.id == communication_id)
            .first()
        )

    def get_by_campaign(self, campaign_id: UUID) -> list[DunningCommunication]:
        return (
            self.db.query(DunningCommunication)
            .filter(DunningCommunication.campaign_id == campaign_id)
            .order_by(
                DunningCommunication.sequence_step.asc(),
                DunningCommunication.created_at.asc(),
            )
            .all()
        )

    def get_for_campaigns(self, campaign_ids: list[UUID]) -> list[DunningCommunication]:
        if not campaign_ids:
            return []
        return (
            self.db.query(DunningCommunication)
            .filter(DunningCommunication.campaign_id.in_(campaign_ids))
            .all()
        )

    def get_sent_between(self, start: datetime, end: datetime) -> list[DunningCommunication]:
        return (
            self.db.query(DunningCommunication)
            .filter(
                DunningCommunication.sent_at.isnot(None),
                DunningCommunication.sent_at >= start,
                DunningCommunication.sent_at < end,
            )
            .all()
        )

    def create(self, **fields: Any) -> DunningCommunication:
        communication = DunningCommunication(**fields)
        self.db.add(communication)
        self.db.commit()
        self.db.refresh(communication)
        return communication

    def save(self, communication: DunningCommunication) -> DunningCommunication:
        self.db.commit()
        self.db.refresh(communication)
        return communication
