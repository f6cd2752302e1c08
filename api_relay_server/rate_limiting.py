"""
Request throttling for the credential endpoints using slowapi.

Register and login are limited per client IP and endpoint so that password
guessing and account spam are bounded. Relay traffic is governed by the
per-user quota tracker instead and is not throttled here.

The decorators bind to one module-level limiter at import time, so
``apply_rate_limits`` reconfigures that limiter from the settings each app is
built with.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from api_relay_server.config import Settings, settings as default_settings
from api_relay_server.logging_config import get_logger


def auth_rate_limit_key(request: Request) -> str:
    """
    Key function for throttling.

    Combines client IP and endpoint so register and login have separate
    budgets.
    """
    return f"ip:{get_remote_address(request)}:{request.url.path}"


limiter = Limiter(
    key_func=auth_rate_limit_key,
    storage_uri=default_settings.rate_limit_storage_uri,
    enabled=default_settings.rate_limit_enabled,
)

_auth_limit = default_settings.auth_rate_limit


def current_auth_limit() -> str:
    """Limit string for register/login, evaluated on every request."""
    return _auth_limit


def auth_endpoint_limit():
    """Rate limit decorator for register/login."""
    return limiter.limit(current_auth_limit)


def configure_limiter(settings: Settings) -> None:
    """Point the shared limiter at the given settings."""
    global _auth_limit
    _auth_limit = settings.auth_rate_limit
    limiter.enabled = settings.rate_limit_enabled

    if settings.rate_limit_storage_uri != limiter._storage_uri:
        # slowapi exposes no public setter for its storage backend
        limiter._storage_uri = settings.rate_limit_storage_uri
        limiter._storage = storage_from_string(settings.rate_limit_storage_uri)
        limiter._limiter = FixedWindowRateLimiter(limiter._storage)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Custom handler for throttled requests.

    Returns the standard ``{"error": ...}`` body.
    """
    logger = get_logger("rate_limiter")
    logger.warning(
        "rate_limit_exceeded",
        key=auth_rate_limit_key(request),
        limit=str(exc.detail),
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": f"Terlalu banyak percobaan: {exc.detail}"},
    )


def apply_rate_limits(app, settings: Settings) -> None:
    """
    Attach the limiter to a FastAPI application.

    Individual endpoints opt in with ``@auth_endpoint_limit()``.
    """
    configure_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.state.limiter = limiter
