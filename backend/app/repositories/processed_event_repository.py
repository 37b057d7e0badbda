"""Repository for ProcessedEvent records."""

from uuid import UUID

from sqlalchemy.orm import Session

from app.models.processed_event import ProcessedEvent
from app.models.shared import generate_uuid


class ProcessedEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, idempotency_key: str) -> ProcessedEvent | None:
        return (
            self.db.query(ProcessedEvent)
            .filter(ProcessedEvent.idempotency_key == idempotency_key)
            .first()
        )

    def add(self, *, idempotency_key: str, event_type: str) -> ProcessedEvent:
        """Stage the event in the current transaction.

        The unique key on ``idempotency_key`` makes a concurrent duplicate fail
        with IntegrityError on flush; the caller commits together with the
        failure it records.
        """
        event = ProcessedEvent(
            id=generate_uuid(),
            idempotency_key=idempotency_key,
            event_type=event_type,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def link_failure(self, event: ProcessedEvent, payment_failure_id: UUID) -> None:
        event.payment_failure_id = payment_failure_id  # type: ignore[assignment]
        self.db.flush()
