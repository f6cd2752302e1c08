"""
Tests for health check and monitoring endpoints.
"""

import pytest

from api_relay_server.health import Metrics
from api_relay_server.store import MemoryObjectStore


class UnreachableStore(MemoryObjectStore):
    """Store whose ping fails"""

    durable = True

    async def ping(self):
        raise ConnectionError("redis down")


class TestHealthEndpoints:

    def test_health(self, client):
        body = client.get("/api/v1/health").json()

        assert body["status"] == "healthy"
        assert body["service"] == "api-relay"

    def test_ready_with_memory_store(self, client):
        response = client.get("/api/v1/ready")

        assert response.status_code == 200
        store_check = response.json()["checks"]["store"]
        assert store_check["status"] == "healthy"
        assert store_check["backend"] == "memory"
        assert "warning" in store_check

    def test_version_reports_features(self, client):
        body = client.get("/api/v1/version").json()

        assert body["version"] == "1.0.0"
        assert body["features"]["quota_mode"] == "soft"
        assert body["features"]["durable_store"] is False
        assert body["features"]["legacy_routes"] is False

    def test_metrics_count_relay_outcomes(self, client, actors):
        before = client.get("/api/v1/metrics").json()["metrics"]["relay"]
        service = actors.create_service()
        key = actors.key_for(service["id"])

        client.get(f"/u/{service['id']}", headers={"x-api-key": key})
        client.get(f"/u/{service['id']}")

        after = client.get("/api/v1/metrics").json()["metrics"]["relay"]
        assert after["total"] - before["total"] == 2
        assert after["success"] - before["success"] == 1
        assert after["auth_failures"] - before["auth_failures"] == 1


class TestReadinessFailure:

    @pytest.fixture
    def store(self):
        return UnreachableStore()

    def test_ready_returns_503(self, client):
        response = client.get("/api/v1/ready")

        assert response.status_code == 503
        assert response.json()["ready"] is False
        assert response.json()["checks"]["store"]["error"] == "redis down"


class TestMetrics:
    """Test suite for the in-memory counters"""

    def test_success_rate(self):
        metrics = Metrics()
        metrics.increment_relay_success()
        metrics.increment_relay_success()
        metrics.increment_relay_success()
        metrics.increment_upstream_errors()

        assert metrics.to_dict()["relay"]["success_rate"] == 75.0

    def test_format_uptime(self):
        assert Metrics._format_uptime(59) == "59s"
        assert Metrics._format_uptime(3661) == "1h 1m 1s"
        assert Metrics._format_uptime(90061) == "1d 1h 1m 1s"
