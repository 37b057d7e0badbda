"""Shared test fixtures for all test modules."""

import contextlib
import hashlib
import hmac
import json
import uuid
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core import database as db_module
from app.core.auth import ROLE_ADMIN, ROLE_CUSTOMER, Caller, issue_token
from app.core.database import Base
from app.models.customer import Customer
from app.services.notifier import DeliveryReceipt, Notifier
from app.services.payment_processor import ChargeResult, PaymentProcessor

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

ADMIN_CALLER = Caller(actor_id="admin-1", role=ROLE_ADMIN)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    session = _TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


def customer_caller(customer_id: uuid.UUID) -> Caller:
    return Caller(actor_id=f"user-{customer_id}", role=ROLE_CUSTOMER, customer_id=customer_id)


def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token('admin-1', ROLE_ADMIN)}"}


def customer_headers(customer_id: uuid.UUID) -> dict[str, str]:
    token = issue_token(f"user-{customer_id}", ROLE_CUSTOMER, customer_id=customer_id)
    return {"Authorization": f"Bearer {token}"}


def signed(payload: dict[str, Any], secret: str) -> tuple[bytes, dict[str, str]]:
    """Serialize a webhook payload and sign it the way the processor does."""
    body = json.dumps(payload, default=str).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"X-Recovery-Signature": signature, "Content-Type": "application/json"}


def create_customer(
    db: Session,
    external_id: str = "cust-001",
    monthly_recurring_cents: int = 2000,
    phone: str | None = None,
    **fields: Any,
) -> Customer:
    customer = Customer(
        external_id=external_id,
        name=fields.pop("name", "Test Customer"),
        email=fields.pop("email", f"{external_id}@example.com"),
        phone=phone,
        monthly_recurring_cents=monthly_recurring_cents,
        **fields,
    )
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


class FakeProcessor(PaymentProcessor):
    """Processor returning queued results, recording every charge."""

    def __init__(self, *results: ChargeResult | Exception):
        self.results = list(results)
        self.charges: list[tuple[str, Decimal, str, str]] = []

    def charge_payment(
        self,
        payment_method_id: str,
        amount_cents: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        self.charges.append((payment_method_id, amount_cents, currency, idempotency_key))
        result = self.results.pop(0) if self.results else ChargeResult(
            success=False, error_code="card_declined"
        )
        if isinstance(result, Exception):
            raise result
        return result


class FakeNotifier(Notifier):
    """Notifier accepting everything unless a channel is listed as failing."""

    def __init__(self, failing: dict[str, Exception | DeliveryReceipt] | None = None):
        self.failing = failing or {}
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def send(
        self, channel: str, template_key: str, personalization: dict[str, Any]
    ) -> DeliveryReceipt:
        outcome = self.failing.get(channel)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, DeliveryReceipt):
            return outcome
        self.sent.append((channel, template_key, personalization))
        return DeliveryReceipt(accepted=True, message_id=f"msg-{len(self.sent)}")
