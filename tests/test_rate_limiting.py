"""
Unit tests for rate limiting functionality.

Tests cover:
- Rate limit key generation
- Rate limit exceeded handling
- Throttling of the login endpoint
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import Mock
from fastapi import Request

from api_relay_server.main_api import create_app
from api_relay_server.rate_limiting import (
    auth_rate_limit_key,
    current_auth_limit,
    limiter,
    rate_limit_exceeded_handler,
)
from tests.conftest import make_settings


class TestRateLimitKey:
    """Test suite for the throttling key."""

    def test_key_combines_ip_and_path(self):
        request = Mock(spec=Request)
        request.client = Mock(host="203.0.113.7")
        request.url = Mock(path="/api/auth/login")
        request.headers = {}

        assert auth_rate_limit_key(request) == "ip:203.0.113.7:/api/auth/login"


class TestRateLimitHandler:
    """Test suite for the 429 handler."""

    def test_handler_returns_error_body(self):
        request = Mock(spec=Request)
        request.client = Mock(host="203.0.113.7")
        request.url = Mock(path="/api/auth/login")
        request.headers = {}
        exc = Mock()
        exc.detail = "5 per 1 minute"

        response = rate_limit_exceeded_handler(request, exc)

        assert response.status_code == 429
        assert json.loads(response.body) == {"error": "Terlalu banyak percobaan: 5 per 1 minute"}


@pytest.fixture
def clean_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.mark.usefixtures("clean_limiter")
class TestLoginThrottling:
    """Enabled limiter caps repeated login attempts per client."""

    @pytest.fixture
    def settings(self):
        return make_settings(rate_limit_enabled=True, auth_rate_limit="5/minute")

    def test_sixth_attempt_is_throttled(self, client):
        statuses = [
            client.post("/api/auth/login", json={"username": "ghost", "password": "secret123"}).status_code
            for _ in range(6)
        ]

        assert statuses == [401, 401, 401, 401, 401, 429]

    def test_register_has_separate_budget(self, client):
        for _ in range(5):
            client.post("/api/auth/login", json={"username": "ghost", "password": "secret123"})

        response = client.post("/api/auth/register", json={"username": "alice", "password": "secret123"})

        assert response.status_code == 201


@pytest.mark.usefixtures("clean_limiter")
class TestThrottlingFollowsAppSettings:
    """Each app applies the throttling settings it was built with."""

    @pytest.fixture
    def settings(self):
        return make_settings(rate_limit_enabled=True, auth_rate_limit="1/minute")

    def test_configured_limit_applies(self, client):
        statuses = [
            client.post("/api/auth/login", json={"username": "ghost", "password": "secret123"}).status_code
            for _ in range(3)
        ]

        assert current_auth_limit() == "1/minute"
        assert statuses == [401, 429, 429]

    def test_disabled_app_is_not_throttled(self, client, store, upstream):
        client.post("/api/auth/login", json={"username": "ghost", "password": "secret123"})

        relaxed = create_app(
            settings=make_settings(rate_limit_enabled=False),
            store=store,
            transport=httpx.MockTransport(upstream),
        )
        with TestClient(relaxed) as relaxed_client:
            statuses = [
                relaxed_client.post("/api/auth/login", json={"username": "ghost", "password": "secret123"}).status_code
                for _ in range(3)
            ]

        assert limiter.enabled is False
        assert statuses == [401, 401, 401]
