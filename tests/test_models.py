"""
Unit tests for request models and upstream URL normalization.
"""

import pytest
from pydantic import ValidationError

from api_relay_server.entities import UserStatus
from api_relay_server.models import (
    ApiKeyCreate,
    RegisterRequest,
    ServiceCreate,
    ServiceUpdate,
    UserUpdate,
    normalize_target,
)


class TestNormalizeTarget:
    """Test suite for normalize_target"""

    def test_lowercases_scheme_and_host(self):
        assert normalize_target("HTTPS://API.Example.COM/v1/Data") == "https://api.example.com/v1/Data"

    def test_empty_path_becomes_slash(self):
        assert normalize_target("http://example.com") == "http://example.com/"

    def test_keeps_port_query_and_fragment(self):
        url = "https://example.com:8443/search?q=1&lang=id#top"
        assert normalize_target(url) == url

    def test_strips_surrounding_whitespace(self):
        assert normalize_target("  https://example.com/x  ") == "https://example.com/x"

    @pytest.mark.parametrize("url", ["", "   ", "example.com/path", "https://", "https://exa mple.com", "https://example.com:99999/"])
    def test_rejects_malformed(self, url):
        with pytest.raises(ValueError, match="targetUrl tidak valid"):
            normalize_target(url)

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "javascript:alert(1)"])
    def test_rejects_non_http_scheme(self, url):
        with pytest.raises(ValueError, match="Protocol target wajib http/https"):
            normalize_target(url)


class TestServiceModels:
    """Test suite for service create/update bodies"""

    def test_create_defaults(self):
        body = ServiceCreate(name=" Weather ", targetUrl="https://api.example.com")

        assert body.name == "Weather"
        assert body.target_url == "https://api.example.com/"
        assert body.method == "ANY"
        assert body.limit == 0
        assert body.active is True

    def test_create_requires_name(self):
        with pytest.raises(ValidationError, match="name wajib diisi"):
            ServiceCreate(targetUrl="https://api.example.com")

    def test_create_requires_target(self):
        with pytest.raises(ValidationError, match="targetUrl tidak valid"):
            ServiceCreate(name="Weather")

    def test_create_rejects_negative_limit(self):
        with pytest.raises(ValidationError):
            ServiceCreate(name="Weather", targetUrl="https://api.example.com", limit=-1)

    def test_method_is_normalized(self):
        assert ServiceCreate(name="w", targetUrl="https://a.example", method="post").method == "POST"
        with pytest.raises(ValidationError, match="method tidak valid"):
            ServiceCreate(name="w", targetUrl="https://a.example", method="TRACE")

    def test_update_tracks_only_given_fields(self):
        body = ServiceUpdate(limit=5)

        assert body.model_fields_set == {"limit"}
        assert body.target_url is None

    def test_update_normalizes_target(self):
        assert ServiceUpdate(targetUrl="HTTP://Example.com").target_url == "http://example.com/"


class TestAccountModels:

    def test_register_accepts_valid_username(self):
        body = RegisterRequest(username="  alice.b-1 ", password="secret1")
        assert body.username == "alice.b-1"

    @pytest.mark.parametrize("username", ["ab", "a" * 33, "al ice", "al___ice", "alice!"])
    def test_register_rejects_bad_username(self, username):
        with pytest.raises(ValidationError):
            RegisterRequest(username=username, password="secret1")

    def test_register_rejects_short_password(self):
        with pytest.raises(ValidationError, match="password minimal 6 karakter"):
            RegisterRequest(username="alice", password="12345")

    def test_user_update_status(self):
        assert UserUpdate(status="APPROVED").status == UserStatus.APPROVED
        with pytest.raises(ValidationError):
            UserUpdate(status="BANNED")

    def test_api_key_create_alias(self):
        body = ApiKeyCreate(serviceId="svc_1")
        assert body.service_id == "svc_1"
        assert body.name == ""
