"""
Pydantic models for request validation plus upstream URL normalization.

Validation failures raised here surface to the caller as 400 responses with
the first error message.
"""

from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator

from api_relay_server.entities import ALLOWED_METHODS, UserStatus, is_valid_username


def normalize_target(url: str) -> str:
    """
    Validate an upstream URL and return its canonical absolute form.

    Only absolute http/https URLs with a host are accepted. Scheme and host
    are lower-cased and an empty path becomes ``/``.

    Raises:
        ValueError: If the URL is malformed or not http(s)
    """
    candidate = (url or "").strip()
    if not candidate or any(c.isspace() for c in candidate):
        raise ValueError("targetUrl tidak valid")

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        raise ValueError("targetUrl tidak valid")

    if not parts.scheme:
        raise ValueError("targetUrl tidak valid")
    if parts.scheme.lower() not in ("http", "https"):
        raise ValueError("Protocol target wajib http/https")
    if not parts.hostname:
        raise ValueError("targetUrl tidak valid")

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None else f"{host}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit((parts.scheme.lower(), netloc, parts.path or "/", parts.query, parts.fragment))


def _clean_method(value: Optional[str]) -> str:
    method = (value or "ANY").strip().upper()
    if method not in ALLOWED_METHODS:
        raise ValueError("method tidak valid")
    return method


class Credentials(BaseModel):
    """Username/password body for register and login."""

    username: str = Field(..., description="Account name")
    password: str = Field(..., description="Plain-text password")

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username wajib diisi")
        return v

    @field_validator("password")
    @classmethod
    def require_password(cls, v: str) -> str:
        if not v:
            raise ValueError("password wajib diisi")
        return v


class RegisterRequest(Credentials):
    """Self-registration body; usernames become storage ids."""

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_username(v):
            raise ValueError("username hanya boleh huruf, angka, titik, strip (3-32 karakter)")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < 6:
            raise ValueError("password minimal 6 karakter")
        return v


class ServiceCreate(BaseModel):
    """Admin request to register an upstream service."""

    name: str = Field("", validate_default=True)
    target_url: str = Field("", alias="targetUrl", validate_default=True)
    method: Optional[str] = "ANY"
    limit: int = Field(0, ge=0)
    docs: str = ""
    active: bool = True

    model_config = {"populate_by_name": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("name wajib diisi")
        return v

    @field_validator("target_url")
    @classmethod
    def validate_target(cls, v: str) -> str:
        return normalize_target(v)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: Optional[str]) -> str:
        return _clean_method(v)


class ServiceUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    name: Optional[str] = None
    target_url: Optional[str] = Field(None, alias="targetUrl")
    method: Optional[str] = None
    limit: Optional[int] = Field(None, ge=0)
    docs: Optional[str] = None
    active: Optional[bool] = None

    model_config = {"populate_by_name": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("name wajib diisi")
        return v

    @field_validator("target_url")
    @classmethod
    def validate_target(cls, v: Optional[str]) -> Optional[str]:
        return normalize_target(v) if v is not None else v

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: Optional[str]) -> Optional[str]:
        return _clean_method(v) if v is not None else v


class UserUpdate(BaseModel):
    """Admin status change for a user account."""

    status: UserStatus


class ApiKeyCreate(BaseModel):
    """User request to mint a key for one service."""

    service_id: str = Field(..., alias="serviceId", min_length=1)
    name: str = ""

    model_config = {"populate_by_name": True}


class RouteCreate(BaseModel):
    """Admin request to create a legacy shared-token route."""

    name: str = Field("", validate_default=True)
    target_url: str = Field("", alias="targetUrl", validate_default=True)
    method: Optional[str] = "ANY"

    model_config = {"populate_by_name": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("name wajib diisi")
        return v

    @field_validator("target_url")
    @classmethod
    def validate_target(cls, v: str) -> str:
        return normalize_target(v)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: Optional[str]) -> str:
        return _clean_method(v)
