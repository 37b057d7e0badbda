"""PaymentMethodHealth repository for data access."""

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payment_method_health import PaymentMethodHealth


class PaymentMethodHealthRepository:
    """Repository for PaymentMethodHealth model."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, customer_id: UUID, payment_method_id: str) -> PaymentMethodHealth | None:
        return (
            self.db.query(PaymentMethodHealth)
            .filter(
                PaymentMethodHealth.customer_id == customer_id,
                PaymentMethodHealth.payment_method_id == payment_method_id,
            )
            .first()
        )

    def get_for_customer(self, customer_id: UUID) -> list[PaymentMethodHealth]:
        return (
            self.db.query(PaymentMethodHealth)
            .filter(PaymentMethodHealth.customer_id == customer_id)
            .order_by(PaymentMethodHealth.created_at.asc(), PaymentMethodHealth.id.asc())
            .all()
        )

    def get_or_create(self, customer_id: UUID, payment_method_id: str) -> PaymentMethodHealth:
        """Return the row for the method, inserting an empty one on first use."""
        existing = self.get(customer_id, payment_method_id)
        if existing is not None:
            return existing
        health = PaymentMethodHealth(
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            success_count=0,
            failure_count=0,
            common_failure_reasons=[],
        )
        self.db.add(health)
        try:
            self.db.commit()
        except IntegrityError:
            # a concurrent outcome created it first
            self.db.rollback()
            existing = self.get(customer_id, payment_method_id)
            if existing is None:
                raise
            return existing
        self.db.refresh(health)
        return health

    def save(self, health: PaymentMethodHealth) -> PaymentMethodHealth:
        self.db.commit()
        self.db.refresh(health)
        return health
