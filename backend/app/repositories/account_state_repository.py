"""AccountState repository.

Rows are only ever inserted. The current state of a customer is the row with
the greatest ``updated_at``, ties broken by ``version``.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.account_state import AccountState
from app.models.shared import generate_uuid, utc_now


class AccountStateRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, account_state_id: UUID) -> AccountState | None:
        return self.db.query(AccountState).filter(AccountState.id == account_state_id).first()

    def get_current(self, customer_id: UUID) -> AccountState | None:
        return (
            self.db.query(AccountState)
            .filter(AccountState.customer_id == customer_id)
            .order_by(AccountState.version.desc())
            .first()
        )

    def get_history(
        self, customer_id: UUID, skip: int = 0, limit: int = 100
    ) -> list[AccountState]:
        return (
            self.db.query(AccountState)
            .filter(AccountState.customer_id == customer_id)
            .order_by(AccountState.version.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count(self, customer_id: UUID) -> int:
        return (
            self.db.query(func.count(AccountState.id))
            .filter(AccountState.customer_id == customer_id)
            .scalar()
            or 0
        )

    def max_version(self, customer_id: UUID) -> int:
        return (
            self.db.query(func.max(AccountState.version))
            .filter(AccountState.customer_id == customer_id)
            .scalar()
            or 0
        )

    def append(self, customer_id: UUID, **fields: Any) -> AccountState:
        """Insert the next row for ``customer_id``.

        The unique (customer_id, version) key makes two writers racing on the
        same customer fail instead of both becoming current.
        """
        now = utc_now()
        row = AccountState(
            id=generate_uuid(),
            customer_id=customer_id,
            version=self.max_version(customer_id) + 1,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def get_customer_ids_in_state(self, state: str) -> list[UUID]:
        """Customers whose current row is in ``state``."""
        candidates = [
            row[0]
            for row in self.db.query(AccountState.customer_id)
            .filter(AccountState.state == state)
            .distinct()
            .all()
        ]
        result = []
        for customer_id in candidates:
            current = self.get_current(customer_id)
            if current is not None and current.state == state:
                result.append(customer_id)
        return result
