"""Tests for the HTTP API."""

import json
import pytest
from fastapi.testclient import TestClient

from residence_payments.api import create_app
from residence_payments.auth import limiter
from residence_payments.connectors import SimulatorConfig
from residence_payments.database import ServiceRepository


AUTH = {"Authorization": "Bearer test_api_key_12345"}


async def _create_service(app, sigla: str, amount: int, status: str = "unpaid") -> int:
    async with app.state.db.session() as session:
        item = await ServiceRepository(session).create(
            sigla=sigla, category="siglatura", amount=amount, status=status
        )
        return item.id


@pytest.fixture(autouse=True)
def reset_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def client(settings, simulators):
    app = create_app(settings, connectors=simulators)
    with TestClient(app) as test_client:
        yield test_client


def add_service(client, sigla: str, amount: int, status: str = "unpaid") -> int:
    """Insert a service item through the app's own database."""
    return client.portal.call(_create_service, client.app, sigla, amount, status)


def create_order(client, sigla: str = "145", method: str = "stripe", **extra) -> dict:
    response = client.post("/payments", json={"sigla": sigla, "payment_method": method, **extra})
    assert response.status_code == 200, response.text
    return response.json()


class TestServiceRoutes:
    """Tests for the service ledger endpoints."""

    def test_pending_services(self, client):
        """Test unpaid items and their total are listed."""
        add_service(client, "145", 50)
        add_service(client, "145", 100)
        add_service(client, "145", 400, status="paid")

        response = client.get("/services/pending/145")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert data["total"] == "1.50"
        assert data["sigla"] == "145"

    def test_mark_paid_requires_api_key(self, client):
        """Test a wrong key is refused."""
        service_id = add_service(client, "145", 50)
        response = client.patch(
            f"/services/{service_id}/mark-paid",
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

    def test_mark_paid(self, client):
        """Test staff can settle an item by hand."""
        service_id = add_service(client, "145", 50)

        response = client.patch(f"/services/{service_id}/mark-paid", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert client.get("/services/pending/145").json()["count"] == 0

    def test_mark_paid_missing(self, client):
        """Test a missing item answers 404."""
        response = client.patch("/services/9999/mark-paid", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["details"]["service_id"] == 9999

    def test_api_key_not_configured(self, settings, simulators):
        """Test protected routes fail closed without a configured key."""
        settings.api_key = ""
        with TestClient(create_app(settings, connectors=simulators)) as client:
            response = client.patch("/services/1/mark-paid", headers=AUTH)
        assert response.status_code == 500
        assert response.json()["detail"] == "Server configuration error"


class TestPaymentRoutes:
    """Tests for checkout, status and capture."""

    def test_create_payment(self, client):
        """Test an order is created for the unpaid services."""
        add_service(client, "145", 50)

        data = create_order(client, amount="0.50")

        assert data["order_id"].startswith("STRIPE_145_")
        assert data["amount"] == "0.50"
        assert data["status"] == "processing"
        assert data["simulated"] is True

    def test_create_payment_amount_mismatch(self, client):
        """Test a tampered amount answers 400 with the expected total."""
        add_service(client, "145", 50)

        response = client.post("/payments", json={"sigla": "145", "payment_method": "stripe", "amount": "5.00"})

        assert response.status_code == 400
        assert response.json()["details"]["expected_amount"] == "0.50"

    def test_create_payment_already_in_progress(self, client):
        """Test a second checkout for the same services answers 409."""
        add_service(client, "145", 50)
        first = create_order(client)

        response = client.post("/payments", json={"sigla": "145", "payment_method": "satispay"})

        assert response.status_code == 409
        assert response.json()["details"]["order_id"] == first["order_id"]

    def test_create_payment_unknown_method(self, client):
        """Test an unknown gateway is refused by request validation."""
        response = client.post("/payments", json={"sigla": "145", "payment_method": "bitcoin"})
        assert response.status_code == 422

    def test_create_payment_gateway_down(self, client, simulators):
        """Test a gateway outage answers 502."""
        add_service(client, "145", 50)
        simulators["satispay"].config = SimulatorConfig(unreachable=True)

        response = client.post("/payments", json={"sigla": "145", "payment_method": "satispay"})

        assert response.status_code == 502

    def test_create_payment_rate_limited(self, client):
        """Test checkout is limited to 20 requests per minute per client."""
        statuses = [
            client.post("/payments", json={"sigla": "999", "payment_method": "stripe"}).status_code
            for _ in range(21)
        ]
        assert statuses[:20] == [400] * 20
        assert statuses[20] == 429

    def test_payment_status(self, client, simulators):
        """Test polling settles an accepted payment."""
        add_service(client, "145", 50)
        order = create_order(client, method="satispay")
        simulators["satispay"].accept(order["provider_payment_id"])

        response = client.get(f"/payments/status/{order['order_id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ACCEPTED"
        assert data["localStatus"] == "completed"
        assert data["amount"] == "0.50"
        assert client.get("/services/pending/145").json()["count"] == 0

    def test_payment_status_gateway_down(self, client, simulators):
        """Test a gateway outage is reported as unknown, not as an error."""
        add_service(client, "145", 50)
        order = create_order(client, method="satispay")
        simulators["satispay"].config = SimulatorConfig(unreachable=True)

        response = client.get(f"/payments/status/{order['order_id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "unknown"
        assert response.json()["localStatus"] == "processing"

    def test_payment_status_unknown_order(self, client):
        """Test a missing order answers 404."""
        response = client.get("/payments/status/STRIPE_0_0")
        assert response.status_code == 404

    def test_capture(self, client, simulators):
        """Test capturing an approved PayPal order completes it."""
        add_service(client, "145", 50)
        order = create_order(client, method="paypal")
        simulators["paypal"].accept(order["provider_payment_id"])

        response = client.post(f"/payments/{order['order_id']}/capture")

        assert response.status_code == 200
        assert response.json()["localStatus"] == "completed"


class TestWebhookRoute:
    """Tests for gateway webhooks."""

    def test_webhook_settles_order(self, client):
        """Test a success notification completes the order."""
        add_service(client, "145", 50)
        order = create_order(client)
        body = json.dumps({"id": "evt_1", "payment_id": order["provider_payment_id"], "status": "ACCEPTED"})

        response = client.post("/webhooks/stripe", content=body)

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "status": "processed",
            "orderId": order["order_id"],
            "localStatus": "completed",
        }

    def test_duplicate_webhook(self, client):
        """Test a redelivery is acknowledged as duplicate."""
        add_service(client, "145", 50)
        order = create_order(client)
        body = json.dumps({"id": "evt_1", "payment_id": order["provider_payment_id"], "status": "ACCEPTED"})

        client.post("/webhooks/stripe", content=body)
        response = client.post("/webhooks/stripe", content=body)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_unknown_order_acknowledged(self, client):
        """Test notifications for unknown orders answer 200 so they stop."""
        body = json.dumps({"id": "evt_2", "payment_id": "nexi_sim_1_x", "status": "ACCEPTED"})
        response = client.post("/webhooks/nexi", content=body)
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_unknown_provider(self, client):
        """Test webhooks for unknown gateways answer 404."""
        response = client.post("/webhooks/bitcoin", content="{}")
        assert response.status_code == 404

    def test_malformed_body(self, client):
        """Test an unparseable body answers 400."""
        response = client.post("/webhooks/stripe", content="not json")
        assert response.status_code == 400

    def test_invalid_signature(self, settings, simulators):
        """Test a forged notification answers 400."""
        simulators["sumup"].webhook_secret = "sumup_secret"
        with TestClient(create_app(settings, connectors=simulators)) as client:
            response = client.post(
                "/webhooks/sumup",
                content='{"payment_id": "x", "status": "ACCEPTED"}',
                headers={"X-Signature": "00" * 32, "X-Timestamp": "1700000000"},
            )
        assert response.status_code == 400
        assert "signature" in response.json()["detail"]

    def test_unexpected_failure_answers_500(self, client, simulators, monkeypatch):
        """Test internal errors answer a generic 500 so the gateway retries."""
        def explode(headers, body):
            raise RuntimeError("boom")

        monkeypatch.setattr(simulators["stripe"], "parse_webhook", explode)

        response = client.post("/webhooks/stripe", content="{}")

        assert response.status_code == 500
        assert response.json() == {"detail": "Webhook processing failed"}


class TestOperationsRoutes:
    """Tests for health and reconciliation endpoints."""

    def test_health(self, client):
        """Test the basic health check."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "environment": "test"}

    def test_reconciliation_health(self, client, simulators):
        """Test gateway health is aggregated."""
        data = client.get("/reconciliation/health").json()
        assert data["status"] == "healthy"
        assert data["scheduler"] == {"running": False, "jobs": []}
        assert set(data["gateways"]) == {"stripe", "satispay", "paypal", "sumup", "nexi"}

        simulators["nexi"].config = SimulatorConfig(unreachable=True)
        assert client.get("/reconciliation/health").json()["status"] == "degraded"

    def test_sweep_requires_api_key(self, client):
        """Test the manual sweep is protected."""
        response = client.post("/reconciliation/sweep", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

    def test_sweep(self, client):
        """Test a manual sweep returns its statistics."""
        response = client.post("/reconciliation/sweep", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["examined"] == 0
        assert response.json()["errors"] == 0
