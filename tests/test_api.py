"""
Tests for FastAPI Endpoints

Integration tests for the webhook receiver and the billing read API.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from decrown_billing.api import server
from decrown_billing.api.server import AppState, app
from decrown_billing.persistence.models import AdjustmentKind

from conftest import mock_event, signed_delivery


@pytest.fixture
def client(services):
    """Test client over the shared test service graph."""
    server.app_state = AppState(services)
    with TestClient(app) as test_client:
        yield test_client
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["processor"] == "mock"
        assert data["webhook_providers"] == ["mock", "paymongo", "stripe"]
        assert "uptime_seconds" in data


class TestWebhookEndpoint:
    """Test POST /webhooks/{provider}."""

    def test_accepted(self, client, services, invoice, clock):
        attempt = services.payments.create_attempt(invoice.id)
        body, headers = signed_delivery("mock", mock_event("evt_api_1", "payment.succeeded", attempt), clock())

        response = client.post("/webhooks/mock", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "accepted"
        assert data["event_id"] == "evt_api_1"
        assert data["outcome"] == "attempt_succeeded"

    def test_duplicate_is_acknowledged(self, client, invoice, clock):
        body, headers = signed_delivery("mock", mock_event("evt_api_2", "customer.updated"), clock())

        client.post("/webhooks/mock", content=body, headers=headers)
        response = client.post("/webhooks/mock", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_deferred_returns_202(self, client, clock):
        payload = mock_event("evt_api_3", "payment.succeeded", transaction_id="txn_unknown")
        body, headers = signed_delivery("mock", payload, clock())

        response = client.post("/webhooks/mock", content=body, headers=headers)

        assert response.status_code == 202
        assert response.json()["deferred_consumers"] == ["payments"]

    def test_bad_signature_returns_401(self, client, clock):
        body, headers = signed_delivery("mock", mock_event("evt_api_4", "payment.succeeded"), clock(), secret="nope")

        response = client.post("/webhooks/mock", content=body, headers=headers)

        assert response.status_code == 401

    def test_stale_delivery_returns_400(self, client, clock):
        sent_at = clock() - timedelta(minutes=10)
        body, headers = signed_delivery("mock", mock_event("evt_api_5", "payment.succeeded"), sent_at)

        response = client.post("/webhooks/mock", content=body, headers=headers)

        assert response.status_code == 400

    def test_unknown_provider_returns_404(self, client):
        response = client.post("/webhooks/paypal", content=b"{}")

        assert response.status_code == 404

    def test_webhooks_need_no_api_key(self, client, clock):
        body, headers = signed_delivery("mock", mock_event("evt_api_6", "customer.updated"), clock())

        response = client.post("/webhooks/mock", content=body, headers=headers)

        assert response.status_code == 200


class TestInvoiceEndpoints:
    """Test the invoice read API."""

    def test_requires_api_key(self, client, invoice):
        response = client.get(f"/invoices/{invoice.id}")

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client, invoice):
        response = client.get(f"/invoices/{invoice.id}", headers={"X-API-Key": "wrong-key"})

        assert response.status_code == 401

    def test_get_invoice(self, client, services, invoice, auth_headers):
        services.invoices.issue_correction(invoice.id, AdjustmentKind.CREDIT, Decimal("50"), "goodwill", "ops-1")

        response = client.get(f"/invoices/{invoice.id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["invoice_number"] == invoice.invoice_number
        assert data["total"] == "2750.00"
        assert data["amount_due"] == "2700.00"
        assert data["status"] == "pending"
        assert [li["code"] for li in data["line_items"]] == ["base", "distance", "time"]

    def test_missing_invoice(self, client, auth_headers):
        response = client.get("/invoices/INV-NOPE", headers=auth_headers)

        assert response.status_code == 404

    def test_attempts(self, client, services, invoice, auth_headers):
        attempt = services.payments.create_attempt(invoice.id)
        services.payments.submit(attempt.id)

        response = client.get(f"/invoices/{invoice.id}/attempts", headers=auth_headers)

        assert response.status_code == 200
        attempts = response.json()
        assert len(attempts) == 1
        assert attempts[0]["status"] == "succeeded"
        assert attempts[0]["idempotency_key"] == attempt.idempotency_key

    def test_notices(self, client, invoice, auth_headers):
        response = client.get(f"/invoices/{invoice.id}/notices", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == []

    def test_account_invoices(self, client, invoice, auth_headers):
        response = client.get("/accounts/acct-A/invoices", headers=auth_headers)

        assert response.status_code == 200
        assert [i["id"] for i in response.json()] == [invoice.id]


class TestOperationsEndpoints:
    """Test security log verification and webhook stats."""

    def test_security_log_verify(self, client, clock, auth_headers):
        body, headers = signed_delivery("mock", mock_event("evt_api_7", "customer.updated"), clock())
        client.post("/webhooks/mock", content=body, headers=headers)

        response = client.get("/security-log/verify", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["length"] == 1

    def test_webhook_stats(self, client, clock, auth_headers):
        body, headers = signed_delivery("mock", mock_event("evt_api_8", "customer.updated"), clock())
        client.post("/webhooks/mock", content=body, headers=headers)

        response = client.get("/webhooks/stats", params={"provider": "mock"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 1
