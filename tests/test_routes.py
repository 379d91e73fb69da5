"""
Tests for the HTTP surface: health, queue inspection, webhook test and purge.
"""
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from wa_gateway.database import get_db
from wa_gateway.main import app
from wa_gateway.models.delivery import DeliveryRecord, DeliveryStatus
from wa_gateway.routes.webhooks import get_delivery_service, get_webhook_service
from wa_gateway.services.http_delivery import DeliveryOutcome
from wa_gateway.services.jwt_service import JWTService
from wa_gateway.services.webhook_service import WebhookTarget


def auth_header(role="account", account_id="acc-1"):
    token = JWTService().create_token("user-1", role, account_id)
    return {"Authorization": f"Bearer {token}"}


ADMIN = auth_header(role="admin", account_id=None)
OWNER = auth_header()
STRANGER = auth_header(account_id="acc-2")


@pytest.fixture
def delivery_service():
    service = Mock()
    service.queue_available = True
    service.stats = AsyncMock(return_value={"available": True, "stats": {"pending": 1}})
    service.store = Mock()
    service.store.list_records = AsyncMock(return_value=[])
    service.store.purge_account = AsyncMock(return_value=3)
    service.http_client = Mock()
    service.http_client.deliver = AsyncMock(return_value=DeliveryOutcome(success=True, status_code=200))
    service.worker = Mock()
    service.worker.status.return_value = {"status": "running"}
    return service


@pytest.fixture
def webhooks():
    service = Mock()
    service.get_webhook = AsyncMock(
        return_value=WebhookTarget(id="wh-1", url="https://one.example.com/hook", secret="s3cret")
    )
    service.invalidate = AsyncMock()
    return service


@pytest.fixture
def client(delivery_service, webhooks):
    app.dependency_overrides[get_delivery_service] = lambda: delivery_service
    app.dependency_overrides[get_webhook_service] = lambda: webhooks
    # No context manager: the lifespan would start the real worker
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestRoot:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        db = Mock()
        db.execute = AsyncMock()
        app.dependency_overrides[get_db] = lambda: db

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["webhook_queue"] == "available"
        assert body["worker"] == {"status": "running"}

    def test_health_degraded(self, client, delivery_service):
        db = Mock()
        db.execute = AsyncMock(side_effect=ConnectionError("refused"))
        app.dependency_overrides[get_db] = lambda: db
        delivery_service.queue_available = False

        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["webhook_queue"] == "fallback"

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "webhook_deliveries_enqueued_total" in response.text


class TestQueueStats:

    def test_admin_gets_stats(self, client):
        response = client.get("/api/webhook-queue/stats", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["stats"] == {"pending": 1}

    def test_account_tokens_are_rejected(self, client):
        assert client.get("/api/webhook-queue/stats", headers=OWNER).status_code == 403

    def test_missing_token(self, client):
        assert client.get("/api/webhook-queue/stats").status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/webhook-queue/stats", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestListDeliveries:

    def test_lists_dead_letters(self, client, delivery_service):
        record = DeliveryRecord(
            id="rec-1",
            account_id="acc-1",
            webhook_id="wh-1",
            webhook_url="https://one.example.com/hook",
            webhook_secret="s3cret",
            payload={"event": "message"},
            status=DeliveryStatus.DEAD_LETTER,
            attempt_count=5,
            max_retries=5,
            last_error="HTTP 500",
        )
        delivery_service.store.list_records = AsyncMock(return_value=[record])

        response = client.get(
            "/api/webhook-queue/deliveries",
            params={"status": "dead_letter", "account_id": "acc-1"},
            headers=ADMIN,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["deliveries"][0]["status"] == "dead_letter"
        assert "webhook_secret" not in body["deliveries"][0]
        delivery_service.store.list_records.assert_awaited_once_with(
            status=DeliveryStatus.DEAD_LETTER, account_id="acc-1", limit=50
        )

    def test_unknown_status(self, client):
        response = client.get("/api/webhook-queue/deliveries", params={"status": "lost"}, headers=ADMIN)
        assert response.status_code == 422

    def test_queue_unavailable(self, client, delivery_service):
        delivery_service.queue_available = False
        response = client.get("/api/webhook-queue/deliveries", headers=ADMIN)
        assert response.status_code == 503


class TestWebhookTest:

    def test_sends_test_event(self, client, delivery_service):
        response = client.post("/api/accounts/acc-1/webhooks/wh-1/test", headers=OWNER)

        assert response.status_code == 200
        assert response.json() == {"success": True, "status_code": 200, "error": None}
        url, secret, envelope = delivery_service.http_client.deliver.await_args.args
        assert url == "https://one.example.com/hook"
        assert secret == "s3cret"
        assert envelope["event"] == "test"
        assert envelope["account_id"] == "acc-1"

    def test_reports_failures(self, client, delivery_service):
        delivery_service.http_client.deliver = AsyncMock(
            return_value=DeliveryOutcome(success=False, status_code=500, error="boom")
        )

        response = client.post("/api/accounts/acc-1/webhooks/wh-1/test", headers=OWNER)

        assert response.json() == {"success": False, "status_code": 500, "error": "HTTP 500: boom"}

    def test_unknown_webhook(self, client, webhooks):
        webhooks.get_webhook = AsyncMock(return_value=None)
        response = client.post("/api/accounts/acc-1/webhooks/wh-9/test", headers=OWNER)
        assert response.status_code == 404

    def test_other_accounts_are_forbidden(self, client):
        response = client.post("/api/accounts/acc-1/webhooks/wh-1/test", headers=STRANGER)
        assert response.status_code == 403

    def test_admin_may_test_any_account(self, client):
        response = client.post("/api/accounts/acc-1/webhooks/wh-1/test", headers=ADMIN)
        assert response.status_code == 200


class TestPurge:

    def test_purges_and_invalidates_cache(self, client, delivery_service, webhooks):
        response = client.delete("/api/accounts/acc-1/deliveries", headers=OWNER)

        assert response.status_code == 200
        assert response.json() == {"purged": 3}
        delivery_service.store.purge_account.assert_awaited_once_with("acc-1")
        webhooks.invalidate.assert_awaited_once_with("acc-1")

    def test_fallback_mode_purges_nothing(self, client, delivery_service):
        delivery_service.queue_available = False

        response = client.delete("/api/accounts/acc-1/deliveries", headers=OWNER)

        assert response.json() == {"purged": 0}
        delivery_service.store.purge_account.assert_not_awaited()
