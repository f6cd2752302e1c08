"""
Configuration management with environment variable validation.
Loads and validates all relay configuration from environment variables.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="api-relay")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8787)

    # Security
    admin_token: Optional[str] = Field(default=None)  # Unset = admin API disabled
    session_ttl_hours: int = Field(default=24, ge=1)

    # Storage
    redis_url: Optional[str] = Field(default=None)  # Unset = in-memory store
    max_log_entries: int = Field(default=500, ge=1)

    # Relay
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)
    quota_mode: str = Field(default="soft")
    legacy_routes_enabled: bool = Field(default=False)

    # Rate Limiting (auth endpoints)
    rate_limit_enabled: bool = Field(default=True)
    auth_rate_limit: str = Field(default="5/minute")
    rate_limit_storage_uri: str = Field(default="memory://")

    # Monitoring
    request_id_header: str = Field(default="X-Request-ID")

    # Logging
    log_format: str = Field(default="json")
    log_file_enabled: bool = Field(default=False)
    log_file_path: str = Field(default="logs/relay.log")
    log_file_max_size: int = Field(default=10485760)  # 10MB
    log_file_backup_count: int = Field(default=5)

    @field_validator("admin_token")
    @classmethod
    def validate_admin_token(cls, v: Optional[str]) -> Optional[str]:
        """Treat a blank token as unset and reject well-known defaults."""
        if v is None or not v.strip():
            return None
        if v in ["CHANGE_ME", "changeme", "password", "secret"]:
            raise ValueError(
                "admin_token must be set to a secure value. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate Redis URL format."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("REDIS_URL must be a Redis connection string")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        allowed = ["json", "console"]
        if v not in allowed:
            raise ValueError(f"log_format must be one of: {allowed}")
        return v

    @field_validator("quota_mode")
    @classmethod
    def validate_quota_mode(cls, v: str) -> str:
        """Validate quota enforcement mode."""
        allowed = ["soft", "strict"]
        if v.lower() not in allowed:
            raise ValueError(f"quota_mode must be one of: {allowed}")
        return v.lower()


def validate_environment() -> Settings:
    """
    Validate environment configuration on startup.
    Raises ValueError if variables are present but invalid.
    """
    try:
        settings = Settings()

        if settings.environment == "production":
            if settings.debug:
                raise ValueError("DEBUG must be False in production")
            if settings.redis_url is None:
                raise ValueError("REDIS_URL is required in production (the in-memory store is not durable)")

        return settings

    except Exception as e:
        print(f"\n❌ Environment Configuration Error:")
        print(f"   {str(e)}\n")
        print("💡 Tip: Copy .env.example to .env and fill in your values")
        raise


# Global settings instance
settings = validate_environment()


if __name__ == "__main__":
    """Test configuration loading."""
    print("✅ Environment configuration validated successfully!")
    print(f"\nConfiguration Summary:")
    print(f"  App: {settings.app_name} v{settings.app_version}")
    print(f"  Environment: {settings.environment}")
    print(f"  Log Level: {settings.log_level}")
    print(f"  Server: {settings.host}:{settings.port}")
    print(f"  Store: {'redis' if settings.redis_url else 'memory (non-durable)'}")
    print(f"  Admin API: {'enabled' if settings.admin_token else 'disabled'}")
    print(f"  Quota Mode: {settings.quota_mode}")
    print(f"  Legacy Routes: {settings.legacy_routes_enabled}")
    print(f"  Auth Rate Limit: {settings.auth_rate_limit if settings.rate_limit_enabled else 'off'}")
