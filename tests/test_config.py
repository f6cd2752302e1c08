"""
Tests for settings validation.
"""

import pytest
from pydantic import ValidationError

from api_relay_server.config import Settings, validate_environment


class TestSettings:

    def test_defaults(self):
        settings = Settings(admin_token=None, _env_file=None)

        assert settings.port == 8787
        assert settings.session_ttl_hours == 24
        assert settings.quota_mode == "soft"
        assert settings.max_log_entries == 500
        assert settings.upstream_timeout_seconds == 30.0

    def test_blank_admin_token_disables_admin(self):
        assert Settings(admin_token="   ").admin_token is None

    @pytest.mark.parametrize("token", ["changeme", "CHANGE_ME", "secret"])
    def test_rejects_placeholder_admin_token(self, token):
        with pytest.raises(ValidationError):
            Settings(admin_token=token)

    def test_rejects_non_redis_url(self):
        with pytest.raises(ValidationError):
            Settings(redis_url="http://localhost:6379")

    def test_quota_mode_is_case_insensitive(self):
        assert Settings(quota_mode="STRICT").quota_mode == "strict"
        with pytest.raises(ValidationError):
            Settings(quota_mode="hard")

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("QUOTA_MODE", "strict")
        monkeypatch.setenv("LEGACY_ROUTES_ENABLED", "true")

        settings = Settings()

        assert settings.quota_mode == "strict"
        assert settings.legacy_routes_enabled is True


class TestValidateEnvironment:

    def test_production_requires_redis(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.delenv("REDIS_URL", raising=False)

        with pytest.raises(ValueError, match="REDIS_URL"):
            validate_environment()

    def test_production_rejects_debug(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")

        with pytest.raises(ValueError, match="DEBUG"):
            validate_environment()

    def test_production_ok_with_redis(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")

        assert validate_environment().redis_url == "redis://localhost:6379/0"
