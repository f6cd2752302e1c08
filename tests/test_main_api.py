"""
Tests for main API endpoints.

Basic integration tests for the FastAPI application: CORS, error
formatting, request IDs and the last-resort error boundary.
"""

import pytest

from api_relay_server.store import MemoryObjectStore


class ExplodingStore(MemoryObjectStore):
    """Memory store whose service reads fail"""

    async def get(self, key):
        if key.startswith("services/"):
            raise RuntimeError("store unavailable")
        return await super().get(key)


class TestRootEndpoint:
    """Test root endpoint."""

    def test_root_endpoint(self, client):
        """Test root endpoint returns message."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert "API relay is running" in response.json()["message"]


class TestCors:
    """Every response carries permissive CORS headers"""

    @pytest.mark.parametrize("path", ["/", "/api/admin/services", "/u/anything", "/nowhere"])
    def test_preflight(self, client, path):
        response = client.options(path, headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"})

        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == "*"
        assert "x-api-key" in response.headers["access-control-allow-headers"]
        assert "PATCH" in response.headers["access-control-allow-methods"]

    def test_error_responses_have_cors(self, client):
        response = client.get("/api/admin/services")

        assert response.status_code == 401
        assert response.headers["access-control-allow-origin"] == "*"


class TestErrorFormat:
    """Errors are rendered as {"error": message}"""

    def test_unknown_endpoint(self, client):
        response = client.get("/api/nothing-here")

        assert response.status_code == 404
        assert response.json() == {"error": "Endpoint tidak ditemukan"}

    def test_wrong_method_on_control_route(self, client, admin_headers):
        response = client.put("/api/admin/logs", headers=admin_headers)

        assert response.status_code == 405
        assert "error" in response.json()


class TestRequestId:

    def test_generated_when_absent(self, client):
        response = client.get("/")
        assert len(response.headers["x-request-id"]) == 36

    def test_echoed_when_present(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"


class TestErrorBoundary:
    """Unhandled exceptions become logged 500s"""

    @pytest.fixture
    def store(self):
        return ExplodingStore()

    def test_unhandled_error_is_500_json(self, client, admin_headers):
        response = client.get("/u/svc_1", headers={"x-api-key": "rk_x"})

        assert response.status_code == 500
        assert response.json() == {"error": "store unavailable"}
        assert response.headers["access-control-allow-origin"] == "*"

    def test_unhandled_error_is_logged(self, client, admin_headers):
        client.get("/u/svc_1", headers={"x-api-key": "rk_x"})

        logs = client.get("/api/admin/logs", headers=admin_headers).json()["items"]

        assert logs[0]["status"] == 500
        assert logs[0]["message"] == "store unavailable"
        assert logs[0]["routeId"] == "svc_1"
