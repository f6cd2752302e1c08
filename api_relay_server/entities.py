"""
Record types persisted in the object store.

Each entity is a dataclass with explicit defaults. ``to_dict`` produces the
camelCase JSON layout used on the wire and in storage; ``from_dict`` accepts
records written by older versions that omit optional fields.
"""

import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

# Joins service id and username in usage storage keys
USAGE_KEY_SEPARATOR = "___"

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]{3,32}$")

ALLOWED_METHODS = ["ANY", "GET", "POST", "PUT", "PATCH", "DELETE"]


def now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id(prefix: str) -> str:
    """Generate ``<prefix>_<16 hex chars>``; never contains the usage separator."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def generate_secret(prefix: Optional[str] = None, nbytes: int = 24) -> str:
    """Generate a URL-safe random secret for API keys and tokens."""
    token = secrets.token_urlsafe(nbytes)
    return f"{prefix}_{token}" if prefix else token


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_PATTERN.match(username)) and USAGE_KEY_SEPARATOR not in username


class UserStatus(str, Enum):
    """Account approval state"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class User:
    """Registered end user"""
    username: str
    password_hash: str
    salt: str
    status: UserStatus = UserStatus.PENDING
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "passwordHash": self.password_hash,
            "salt": self.salt,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """User record without password material"""
        return {
            "username": self.username,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            username=data["username"],
            password_hash=data.get("passwordHash", ""),
            salt=data.get("salt", ""),
            status=UserStatus(data.get("status", UserStatus.PENDING.value)),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Service:
    """Upstream API target registered by an admin"""
    id: str
    name: str
    target_url: str
    method: str = "ANY"
    limit: int = 0  # 0 = unlimited
    docs: str = ""
    active: bool = True
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "targetUrl": self.target_url,
            "method": self.method,
            "limit": self.limit,
            "docs": self.docs,
            "active": self.active,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Service":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            target_url=data["targetUrl"],
            method=data.get("method") or "ANY",
            limit=int(data.get("limit") or 0),
            docs=data.get("docs") or "",
            active=bool(data.get("active", True)),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class ApiKey:
    """Per-user, per-service credential for the relay endpoint"""
    key: str
    name: str
    service_id: str
    username: str
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "serviceId": self.service_id,
            "username": self.username,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiKey":
        return cls(
            key=data["key"],
            name=data.get("name", ""),
            service_id=data["serviceId"],
            username=data["username"],
            created_at=data.get("createdAt", ""),
        )


@dataclass
class Session:
    """Bearer session issued at login; fixed lifetime, no refresh"""
    token: str
    username: str
    expires_at: int  # epoch ms

    def is_valid(self, at_ms: int) -> bool:
        return self.expires_at > at_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "username": self.username,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            token=data["token"],
            username=data["username"],
            expires_at=int(data.get("expiresAt") or 0),
        )


class UsageKey(NamedTuple):
    """Composite identity of a usage counter"""
    service_id: str
    username: str


@dataclass
class UsageCounter:
    """Cumulative successful-request count for one (service, user) pair"""
    service_id: str
    username: str
    count: int = 0
    last_request: Optional[str] = None

    @property
    def key(self) -> UsageKey:
        return UsageKey(self.service_id, self.username)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serviceId": self.service_id,
            "username": self.username,
            "count": self.count,
            "lastRequest": self.last_request,
        }

    @classmethod
    def from_dict(cls, key: UsageKey, data: Optional[Dict[str, Any]]) -> "UsageCounter":
        data = data or {}
        return cls(
            service_id=key.service_id,
            username=key.username,
            count=int(data.get("count") or 0),
            last_request=data.get("lastRequest"),
        )


@dataclass
class LogEntry:
    """Relay failure record for operators"""
    status: int
    message: str
    route_id: Optional[str] = None
    target_url: Optional[str] = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "routeId": self.route_id,
            "targetUrl": self.target_url,
            "status": self.status,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            status=int(data.get("status") or 0),
            message=data.get("message", ""),
            route_id=data.get("routeId"),
            target_url=data.get("targetUrl"),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class LegacyRoute:
    """Shared-token route from the single-token relay mode"""
    id: str
    name: str
    target_url: str
    method: str = "ANY"
    active: bool = True
    created_at: str = field(default_factory=now_iso)

    def allows(self, method: str) -> bool:
        return self.method == "ANY" or method.upper() == self.method

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "targetUrl": self.target_url,
            "method": self.method,
            "active": self.active,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LegacyRoute":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            target_url=data["targetUrl"],
            method=data.get("method") or "ANY",
            active=bool(data.get("active", True)),
            created_at=data.get("createdAt", ""),
        )
