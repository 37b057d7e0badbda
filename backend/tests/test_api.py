"""API tests for the payment recovery endpoints."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.main import app
from app.routers.payment_failures import get_payment_failure_service
from app.schemas.payment_failure import SweepResult
from app.services.job_log_service import JobLogService
from app.services.payment_failure_service import PaymentFailureService
from app.services.payment_processor import ChargeResult
from app.services.retry_policy import BackoffPolicy
from tests.conftest import (
    FakeNotifier,
    FakeProcessor,
    admin_headers,
    create_customer,
    customer_headers,
    signed,
)


@pytest.fixture
def client():
    """Create test client."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def customer(db_session):
    return create_customer(db_session, created_at=datetime(2025, 1, 1, tzinfo=UTC))


@pytest.fixture
def processor():
    """Route retries through a fake processor."""
    fake = FakeProcessor()

    def override(db: Session = Depends(get_db)) -> PaymentFailureService:
        return PaymentFailureService(
            db,
            processor=fake,
            backoff=BackoffPolicy(
                base_delay=timedelta(hours=1),
                max_delay=timedelta(hours=72),
                jitter_max=timedelta(0),
            ),
            notifier=FakeNotifier(),
        )

    app.dependency_overrides[get_payment_failure_service] = override
    return fake


def _failed_event(customer_id, key="evt-1", **fields):
    payload = {
        "idempotency_key": key,
        "customer_id": str(customer_id),
        "subscription_id": "8d4c3c55-0a4e-4a8e-9a8a-3b1a1d0c9e11",
        "payment_method_id": "pm_1",
        "amount_cents": "2500",
        "currency": "USD",
        "failure_reason": "Card declined",
        "failure_code": "insufficient_funds",
    }
    payload.update(fields)
    return payload


def _record(client, customer_id, **fields):
    body, headers = signed(_failed_event(customer_id, **fields), settings.PROCESSOR_WEBHOOK_SECRET)
    return client.post("/v1/payment_failures/events/payment_failed", content=body, headers=headers)


class TestRoot:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_requires_bearer_token(self, client):
        response = client.get("/v1/payment_failures/")
        assert response.status_code == 401


class TestPaymentFailureWebhooks:
    def test_records_failure(self, client, customer):
        response = _record(client, customer.id)

        assert response.status_code == 200
        data = response.json()
        assert data["created"] is True
        assert data["duplicate"] is False
        assert data["failure"]["status"] == "pending"
        assert data["failure"]["classification"] == "temporary"
        assert data["failure"]["max_retry_attempts"] == 3

    def test_redelivery_returns_original(self, client, customer):
        first = _record(client, customer.id).json()
        second = _record(client, customer.id).json()

        assert second["duplicate"] is True
        assert second["failure"]["id"] == first["failure"]["id"]

    def test_bad_signature(self, client, customer):
        body, headers = signed(_failed_event(customer.id), "wrong-secret")
        response = client.post(
            "/v1/payment_failures/events/payment_failed", content=body, headers=headers
        )
        assert response.status_code == 401

    def test_invalid_payload(self, client, customer):
        response = _record(client, customer.id, amount_cents="-5")
        assert response.status_code == 422

    def test_payment_succeeded_resolves_failure(self, client, customer):
        _record(client, customer.id)
        body, headers = signed(
            {
                "idempotency_key": "evt-2",
                "customer_id": str(customer.id),
                "subscription_id": "8d4c3c55-0a4e-4a8e-9a8a-3b1a1d0c9e11",
                "transaction_id": "txn_9",
            },
            settings.PROCESSOR_WEBHOOK_SECRET,
        )
        response = client.post(
            "/v1/payment_failures/events/payment_succeeded", content=body, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "resolved"

        state = client.get(f"/v1/account_states/{customer.id}", headers=admin_headers()).json()
        assert state["state"] == "active"


class TestPaymentFailureEndpoints:
    def test_customer_sees_only_own_failures(self, client, db_session, customer):
        other = create_customer(db_session, external_id="cust-002")
        _record(client, customer.id)
        _record(client, other.id, key="evt-other")

        response = client.get("/v1/payment_failures/", headers=customer_headers(customer.id))
        assert response.status_code == 200
        assert [f["customer_id"] for f in response.json()] == [str(customer.id)]

        all_failures = client.get("/v1/payment_failures/", headers=admin_headers()).json()
        assert len(all_failures) == 2

    def test_other_customer_forbidden(self, client, customer):
        failure_id = _record(client, customer.id).json()["failure"]["id"]
        response = client.get(
            f"/v1/payment_failures/{failure_id}", headers=customer_headers(uuid.uuid4())
        )
        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_not_found(self, client):
        response = client.get(f"/v1/payment_failures/{uuid.uuid4()}", headers=admin_headers())
        assert response.status_code == 404

    def test_retry_success_then_conflict(self, client, customer, processor):
        processor.results.append(ChargeResult(success=True, transaction_id="txn_1"))
        failure_id = _record(client, customer.id).json()["failure"]["id"]

        response = client.post(
            f"/v1/payment_failures/{failure_id}/retry",
            json={},
            headers=customer_headers(customer.id),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["transaction_id"] == "txn_1"
        assert data["failure"]["status"] == "resolved"

        again = client.post(
            f"/v1/payment_failures/{failure_id}/retry",
            json={},
            headers=customer_headers(customer.id),
        )
        assert again.status_code == 409
        body = again.json()
        assert body["error"] == "invalid_state"
        assert body["current"]["status"] == "resolved"
        assert len(processor.charges) == 1

    def test_declined_retry_schedules_next(self, client, customer, processor):
        failure_id = _record(client, customer.id).json()["failure"]["id"]

        response = client.post(
            f"/v1/payment_failures/{failure_id}/retry", json={}, headers=admin_headers()
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "card_declined"
        assert data["failure"]["retry_count"] == 1
        assert data["next_retry_at"] is not None

    def test_abandon_requires_admin(self, client, customer):
        failure_id = _record(client, customer.id).json()["failure"]["id"]

        forbidden = client.post(
            f"/v1/payment_failures/{failure_id}/abandon",
            json={"reason": "gave up"},
            headers=customer_headers(customer.id),
        )
        assert forbidden.status_code == 403

        response = client.post(
            f"/v1/payment_failures/{failure_id}/abandon",
            json={"reason": "gave up"},
            headers=admin_headers(),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "abandoned"


class TestDunningEndpoints:
    def test_campaign_created_with_failure(self, client, customer):
        failure_id = _record(client, customer.id).json()["failure"]["id"]

        response = client.get(
            "/v1/dunning_campaigns/",
            params={"payment_failure_id": failure_id},
            headers=customer_headers(customer.id),
        )
        assert response.status_code == 200
        campaigns = response.json()
        assert len(campaigns) == 1
        assert campaigns[0]["campaign_type"] == "standard"
        assert campaigns[0]["status"] == "active"

    def test_pause_campaign(self, client, customer):
        failure_id = _record(client, customer.id).json()["failure"]["id"]
        campaign = client.get(
            "/v1/dunning_campaigns/",
            params={"payment_failure_id": failure_id},
            headers=admin_headers(),
        ).json()[0]

        response = client.put(
            f"/v1/dunning_campaigns/{campaign['id']}",
            json={"status": "paused"},
            headers=admin_headers(),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "paused"

    def test_unknown_channel_rejected(self, client, customer):
        failure_id = _record(client, customer.id).json()["failure"]["id"]
        response = client.post(
            "/v1/dunning_campaigns/",
            json={
                "customer_id": str(customer.id),
                "payment_failure_id": failure_id,
                "communication_channels": ["carrier_pigeon"],
            },
            headers=admin_headers(),
        )
        assert response.status_code == 422

    def test_communication_event_signature(self, client):
        body, headers = signed({"event": "opened"}, "wrong-secret")
        response = client.post(
            f"/v1/dunning_campaigns/communications/{uuid.uuid4()}/events",
            content=body,
            headers=headers,
        )
        assert response.status_code == 401

    def test_communication_event_unknown(self, client):
        body, headers = signed({"event": "opened"}, settings.NOTIFIER_WEBHOOK_SECRET)
        response = client.post(
            f"/v1/dunning_campaigns/communications/{uuid.uuid4()}/events",
            content=body,
            headers=headers,
        )
        assert response.status_code == 404


class TestAccountStateEndpoints:
    def test_failure_moves_account_to_grace(self, client, customer):
        _record(client, customer.id)

        response = client.get(
            f"/v1/account_states/{customer.id}", headers=customer_headers(customer.id)
        )
        assert response.status_code == 200
        assert response.json()["state"] == "grace_period"

        history = client.get(
            f"/v1/account_states/{customer.id}/history", headers=admin_headers()
        ).json()
        assert [row["state"] for row in history] == ["grace_period", "active"]

    def test_feature_access(self, client, customer):
        response = client.get(
            f"/v1/account_states/{customer.id}/features/api_access",
            headers=customer_headers(customer.id),
        )
        assert response.status_code == 200
        assert response.json()["allowed"] is True

        restrictions = client.get(
            f"/v1/account_states/{customer.id}/feature_restrictions",
            headers=customer_headers(customer.id),
        ).json()
        assert restrictions["restrictions"] == []

    def test_admin_override(self, client, customer):
        current = client.get(f"/v1/account_states/{customer.id}", headers=admin_headers()).json()

        forbidden = client.put(
            "/v1/account_states/",
            json={"account_state_id": current["id"], "state": "grace_period", "reason": "x"},
            headers=customer_headers(customer.id),
        )
        assert forbidden.status_code == 403

        off_graph = client.put(
            "/v1/account_states/",
            json={"account_state_id": current["id"], "state": "suspended", "reason": "abuse"},
            headers=admin_headers(),
        )
        assert off_graph.status_code == 409
        assert off_graph.json()["current"]["state"] == "active"

        response = client.put(
            "/v1/account_states/",
            json={
                "account_state_id": current["id"],
                "state": "suspended",
                "reason": "abuse",
                "manual_override": True,
                "override_reason": "terms violation",
            },
            headers=admin_headers(),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "suspended"
        assert data["manual_override"] is True
        assert data["override_by"] == "admin-1"


class TestAnalyticsAndAuditEndpoints:
    def test_generate_and_summarize(self, client, customer):
        _record(client, customer.id)
        today = datetime.now(UTC).date().isoformat()

        generated = client.post(
            "/v1/recovery_analytics/generate", json={"date": today}, headers=admin_headers()
        )
        assert generated.status_code == 200

        summary = client.get(
            "/v1/recovery_analytics/summary",
            params={"start_date": today, "end_date": today},
            headers=admin_headers(),
        )
        assert summary.status_code == 200
        assert summary.json()["total_failures"] == sum(
            r["total_failures"] for r in generated.json()
        )

    def test_inverted_range_rejected(self, client):
        response = client.get(
            "/v1/recovery_analytics/",
            params={"start_date": "2026-09-02", "end_date": "2026-09-01"},
            headers=admin_headers(),
        )
        assert response.status_code == 422

    def test_analytics_admin_only(self, client, customer):
        response = client.get(
            "/v1/recovery_analytics/",
            params={"start_date": "2026-09-01", "end_date": "2026-09-01"},
            headers=customer_headers(customer.id),
        )
        assert response.status_code == 403

    def test_audit_trail(self, client, customer):
        failure_id = _record(client, customer.id).json()["failure"]["id"]

        response = client.get(
            f"/v1/audit_logs/payment_failure/{failure_id}", headers=admin_headers()
        )
        assert response.status_code == 200
        assert "created" in {entry["action"] for entry in response.json()}

        forbidden = client.get("/v1/audit_logs/", headers=customer_headers(customer.id))
        assert forbidden.status_code == 403


class TestJobsApi:
    @pytest.mark.parametrize(
        "job_type,helper",
        [
            ("payment_retry", "enqueue_retry_sweep"),
            ("dunning_campaigns", "enqueue_dunning_sweep"),
            ("grace_period_monitoring", "enqueue_grace_period_check"),
        ],
    )
    def test_trigger_enqueues_sweep(self, client, job_type, helper):
        with patch(f"app.routers.jobs.{helper}", new_callable=AsyncMock) as mock_enqueue:
            mock_enqueue.return_value = MagicMock(job_id="job-1")

            response = client.post(f"/v1/jobs/{job_type}/trigger", headers=admin_headers())

        assert response.status_code == 202
        assert response.json() == {"job_type": job_type, "job_id": "job-1"}
        mock_enqueue.assert_awaited_once_with()

    def test_trigger_metrics_for_date(self, client):
        with patch(
            "app.routers.jobs.enqueue_daily_metrics", new_callable=AsyncMock
        ) as mock_enqueue:
            mock_enqueue.return_value = None

            response = client.post(
                "/v1/jobs/analytics_generation/trigger",
                json={"metrics_date": "2026-09-01"},
                headers=admin_headers(),
            )

        assert response.status_code == 202
        assert response.json()["job_id"] is None
        mock_enqueue.assert_awaited_once_with("2026-09-01")

    def test_trigger_unknown_job(self, client):
        response = client.post("/v1/jobs/reindex/trigger", headers=admin_headers())
        assert response.status_code == 422

    def test_trigger_admin_only(self, client, customer):
        with patch("app.routers.jobs.enqueue_retry_sweep", new_callable=AsyncMock) as mock_enqueue:
            response = client.post(
                "/v1/jobs/payment_retry/trigger", headers=customer_headers(customer.id)
            )

        assert response.status_code == 403
        mock_enqueue.assert_not_awaited()

    def test_history_and_health(self, client, db_session):
        JobLogService(db_session).run(
            "payment_retry", lambda: SweepResult(processed=2, succeeded=2)
        )

        history = client.get(
            "/v1/jobs/history", params={"job_type": "payment_retry"}, headers=admin_headers()
        )
        assert history.status_code == 200
        [run] = history.json()
        assert run["trigger"] == "cron"
        assert run["processed"] == 2
        assert run["metadata"] == {"skipped": 0, "abandoned": 0}

        health = client.get("/v1/jobs/health", headers=admin_headers())
        assert health.status_code == 200
        assert health.json()["total_runs_today"] == 1
        assert health.json()["last_success"]["payment_retry"] is not None

    def test_payment_method_health(self, client, customer):
        _record(client, customer.id)

        response = client.get(
            f"/v1/payment_failures/customers/{customer.id}/payment_methods",
            headers=customer_headers(customer.id),
        )

        assert response.status_code == 200
        [card] = response.json()
        assert card["payment_method_id"] == "pm_1"
        assert card["failure_count"] == 1
        assert card["common_failure_reasons"] == ["insufficient_funds"]
