"""Shared test fixtures"""
import json
from typing import Callable, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from api_relay_server.config import Settings
from api_relay_server.main_api import create_app
from api_relay_server.repositories import Repositories
from api_relay_server.store import MemoryObjectStore

ADMIN_TOKEN = "test-admin-token-for-testing-only"
START_MS = 1_700_000_000_000


def upstream_response(
    status_code: int = 200,
    json_body=None,
    content: bytes = b"",
    headers: Optional[dict] = None,
) -> httpx.Response:
    """Build an unread upstream response the relay can stream back"""
    headers = dict(headers or {})
    if json_body is not None:
        content = json.dumps(json_body).encode("utf-8")
        headers.setdefault("content-type", "application/json")
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(content))


class FakeUpstream:
    """Callable for httpx.MockTransport that records every outbound request"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = (
            lambda request: upstream_response(200, {"ok": True, "path": request.url.path})
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class FakeClock:
    """Epoch-millisecond clock that only moves when told to"""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance_hours(self, hours: float) -> None:
        self.now += int(hours * 60 * 60 * 1000)


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "admin_token": ADMIN_TOKEN,
        "rate_limit_enabled": False,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


class Actors:
    """Drives the control API the way an admin and end users would"""

    def __init__(self, client: TestClient):
        self.client = client
        self.admin = {"x-admin-token": ADMIN_TOKEN}

    def create_service(self, name: str = "Weather", target_url: str = "https://api.example.com/v1/weather", **fields) -> dict:
        body = {"name": name, "targetUrl": target_url, **fields}
        response = self.client.post("/api/admin/services", json=body, headers=self.admin)
        assert response.status_code == 201, response.text
        return response.json()["item"]

    def register(self, username: str = "alice", password: str = "secret123") -> dict:
        response = self.client.post("/api/auth/register", json={"username": username, "password": password})
        assert response.status_code == 201, response.text
        return response.json()["user"]

    def set_status(self, username: str, status: str) -> None:
        response = self.client.patch(f"/api/admin/users/{username}", json={"status": status}, headers=self.admin)
        assert response.status_code == 200, response.text

    def login(self, username: str = "alice", password: str = "secret123") -> str:
        response = self.client.post("/api/auth/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.text
        return response.json()["token"]

    def approved_user(self, username: str = "alice", password: str = "secret123") -> str:
        """Register, approve and log in; returns the session token"""
        self.register(username, password)
        self.set_status(username, "APPROVED")
        return self.login(username, password)

    def create_key(self, token: str, service_id: str, name: str = "") -> str:
        response = self.client.post(
            "/api/user/keys",
            json={"serviceId": service_id, "name": name},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 201, response.text
        return response.json()["item"]["key"]

    def key_for(self, service_id: str, username: str = "alice") -> str:
        return self.create_key(self.approved_user(username), service_id)


@pytest.fixture
def store() -> MemoryObjectStore:
    """Fresh in-memory store per test"""
    return MemoryObjectStore()


@pytest.fixture
def repos(store) -> Repositories:
    return Repositories(store, max_log_entries=500)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings, store, upstream, clock):
    return create_app(
        settings=settings,
        store=store,
        transport=httpx.MockTransport(upstream),
        clock=clock,
    )


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create test client."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def actors(client) -> Actors:
    return Actors(client)


@pytest.fixture
def admin_headers() -> dict:
    return {"x-admin-token": ADMIN_TOKEN}
