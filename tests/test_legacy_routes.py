"""
Tests for legacy shared-token routes (LEGACY_ROUTES_ENABLED).
"""

import asyncio

import pytest

from api_relay_server.entities import LegacyRoute
from tests.conftest import make_settings


class TestLegacyRoutesEnabled:
    """Shared-token relay mode"""

    @pytest.fixture
    def settings(self):
        return make_settings(legacy_routes_enabled=True)

    @pytest.fixture
    def route(self, client, admin_headers):
        response = client.post(
            "/api/admin/routes",
            json={"name": "Echo", "targetUrl": "https://echo.example.com/any", "method": "post"},
            headers=admin_headers,
        )
        assert response.status_code == 201, response.text
        return response.json()["item"]

    def test_create_returns_user_token(self, route):
        assert route["id"].startswith("api_")
        assert route["method"] == "POST"
        assert len(route["userToken"]) >= 24

    def test_list_includes_tokens(self, client, route, admin_headers):
        items = client.get("/api/admin/routes", headers=admin_headers).json()["items"]

        assert [(item["id"], item["userToken"]) for item in items] == [(route["id"], route["userToken"])]

    def test_relay_with_shared_token(self, client, route, upstream):
        response = client.post(
            f"/u/{route['id']}?x=1",
            json={"a": 1},
            headers={"x-user-token": route["userToken"]},
        )

        assert response.status_code == 200
        assert str(upstream.last.url) == "https://echo.example.com/any?x=1"
        assert "x-user-token" not in upstream.last.headers

    def test_wrong_token(self, client, route, upstream):
        response = client.post(f"/u/{route['id']}", headers={"x-user-token": "nope"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized user token"}
        assert upstream.requests == []

    def test_method_pin(self, client, route, upstream):
        response = client.get(f"/u/{route['id']}", headers={"x-user-token": route["userToken"]})

        assert response.status_code == 405
        assert response.json() == {"error": "Method harus POST"}
        assert upstream.requests == []

    def test_legacy_calls_are_not_metered(self, client, route, admin_headers):
        for _ in range(3):
            client.post(f"/u/{route['id']}", headers={"x-user-token": route["userToken"]})

        assert client.get("/api/admin/usage", headers=admin_headers).json()["items"] == []

    def test_delete_route(self, client, route, admin_headers):
        client.delete(f"/api/admin/routes/{route['id']}", headers=admin_headers)

        response = client.post(f"/u/{route['id']}", headers={"x-user-token": route["userToken"]})

        assert response.status_code == 404

    def test_services_take_precedence(self, client, actors):
        service = actors.create_service()
        key = actors.key_for(service["id"])

        assert client.get(f"/u/{service['id']}", headers={"x-api-key": key}).status_code == 200

    def test_routes_require_admin(self, client):
        assert client.get("/api/admin/routes").status_code == 401


class TestLegacyRoutesDisabled:
    """Default configuration hides the legacy surface"""

    def test_admin_routes_endpoint_absent(self, client, admin_headers):
        response = client.get("/api/admin/routes", headers=admin_headers)

        assert response.status_code == 404

    def test_stored_route_not_reachable(self, client, repos):
        async def seed():
            await repos.routes.save(LegacyRoute(id="api_old", name="old", target_url="https://example.com/"))
            await repos.routes.save_token("api_old", "shared")

        asyncio.run(seed())

        response = client.get("/u/api_old", headers={"x-user-token": "shared"})

        assert response.status_code == 404
        assert response.json() == {"error": "Service tidak ditemukan"}
