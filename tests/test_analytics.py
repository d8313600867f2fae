# tests/test_analytics.py
"""
Tests for the per-endpoint analytics summary.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from paygate.api.deps import GatewayContext
from paygate.api.endpoints.analytics import compute_analytics
from paygate.core.config import settings
from paygate.main import create_app
from paygate.services.metrics import MetricsSink

OWNER_KEY = "owner-secret"


@pytest.fixture
def client(storage, endpoint, monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", OWNER_KEY)
    context = GatewayContext(
        storage=storage,
        registry=MagicMock(),
        payment_gate=MagicMock(),
        forwarder=MagicMock(),
        sink=MetricsSink(storage),
    )
    return TestClient(create_app(context=context), headers={"X-API-Key": OWNER_KEY})


@pytest.fixture
def usage(storage, endpoint):
    storage.log_request("ep1", True, 100)
    storage.log_request("ep1", True, 200)
    storage.log_request("ep1", False, 300)
    storage.log_request("ep1", True, 0)
    storage.record_payment("0x1", "ep1", 5.0, "0xalice")
    storage.record_payment("0x2", "ep1", 5.0, "0xbob")
    storage.record_payment("0x3", "ep1", 7.5, "0xalice")


class TestComputeAnalytics:
    """Test the summary arithmetic."""

    def test_summary(self, storage, usage):
        since = datetime.now(timezone.utc) - timedelta(days=1)

        analytics = compute_analytics(storage, "ep1", since)

        assert analytics.requests.total == 4
        assert analytics.requests.successful == 3
        assert analytics.requests.successRate == "75.0%"
        assert analytics.requests.avgResponseTime == "150ms"
        assert analytics.revenue.total == 17.5
        assert analytics.revenue.paymentCount == 3
        assert analytics.revenue.currency == "USDC"
        assert analytics.customers.unique == 2

    def test_no_traffic(self, storage, endpoint):
        analytics = compute_analytics(storage, "ep1", datetime.now(timezone.utc) - timedelta(days=7))

        assert analytics.requests.total == 0
        assert analytics.requests.successRate == "0.0%"
        assert analytics.requests.avgResponseTime == "0ms"
        assert analytics.revenue.total == 0
        assert analytics.customers.unique == 0

    def test_excludes_failed_payments(self, storage, endpoint):
        storage.record_payment("0x9", "ep1", 5.0, "0xcarol", status="FAILED")
        analytics = compute_analytics(storage, "ep1", datetime.now(timezone.utc) - timedelta(days=1))
        assert analytics.revenue.paymentCount == 0


class TestAnalyticsEndpoint:
    """Test GET /api/v1/endpoints/{id}/analytics."""

    def test_returns_envelope(self, client, usage):
        response = client.get("/api/v1/endpoints/ep1/analytics?period=7d")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["requests"]["total"] == 4
        assert body["data"]["revenue"]["total"] == 17.5
        assert body["data"]["customers"]["unique"] == 2

    def test_unknown_period_defaults(self, client, usage):
        response = client.get("/api/v1/endpoints/ep1/analytics?period=forever")
        assert response.status_code == 200
        assert response.json()["data"]["requests"]["total"] == 4

    def test_unknown_endpoint(self, client):
        response = client.get("/api/v1/endpoints/missing/analytics")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "API_NOT_FOUND"


class TestAnalyticsAccess:
    """Test the owner API key on the analytics route."""

    def test_missing_key_is_401(self, client, usage):
        response = client.get("/api/v1/endpoints/ep1/analytics", headers={"X-API-Key": ""})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_wrong_key_is_403(self, client, usage):
        response = client.get("/api/v1/endpoints/ep1/analytics", headers={"X-API-Key": "guess"})

        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": {"code": "ACCESS_DENIED", "message": "Invalid API key"},
        }

    def test_unconfigured_key_denies_everyone(self, client, usage, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", None)

        response = client.get("/api/v1/endpoints/ep1/analytics")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCESS_DENIED"

    def test_unknown_endpoint_still_needs_key(self, client):
        response = client.get("/api/v1/endpoints/missing/analytics", headers={"X-API-Key": "guess"})
        assert response.status_code == 403
