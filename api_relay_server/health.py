"""
Health check and monitoring endpoints for production readiness.
"""
import time
from typing import Dict, Any
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api_relay_server.logging_config import get_logger

# Initialize router
router = APIRouter(prefix="/api/v1", tags=["health"])


class Metrics:
    """Simple in-memory relay counters"""
    def __init__(self):
        self.start_time = time.time()
        self.relay_requests = 0
        self.relay_success = 0
        self.upstream_errors = 0
        self.transport_failures = 0
        self.quota_rejections = 0
        self.auth_failures = 0

    def increment_relay_requests(self):
        self.relay_requests += 1

    def increment_relay_success(self):
        self.relay_success += 1

    def increment_upstream_errors(self):
        self.upstream_errors += 1

    def increment_transport_failures(self):
        self.transport_failures += 1

    def increment_quota_rejections(self):
        self.quota_rejections += 1

    def increment_auth_failures(self):
        self.auth_failures += 1

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        uptime = self.get_uptime_seconds()
        forwarded = self.relay_success + self.upstream_errors
        return {
            "uptime_seconds": round(uptime, 2),
            "uptime_human": self._format_uptime(uptime),
            "relay": {
                "total": self.relay_requests,
                "rate_per_second": round(self.relay_requests / uptime, 2) if uptime > 0 else 0,
                "success": self.relay_success,
                "upstream_errors": self.upstream_errors,
                "transport_failures": self.transport_failures,
                "quota_rejections": self.quota_rejections,
                "auth_failures": self.auth_failures,
                "success_rate": round(self.relay_success / forwarded * 100, 2) if forwarded > 0 else 0,
            },
        }

    @staticmethod
    def _format_uptime(seconds: float) -> str:
        """Format uptime in human-readable format"""
        days = int(seconds // 86400)
        hours = int((seconds % 86400) // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)

        if days > 0:
            return f"{days}d {hours}h {minutes}m {secs}s"
        elif hours > 0:
            return f"{hours}h {minutes}m {secs}s"
        elif minutes > 0:
            return f"{minutes}m {secs}s"
        else:
            return f"{secs}s"


# Global metrics instance
metrics = Metrics()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def check_store(request: Request) -> Dict[str, Any]:
    """Check object store connectivity"""
    store = request.app.state.store
    backend = "redis" if store.durable else "memory"

    try:
        start = time.time()
        await store.ping()
        duration_ms = (time.time() - start) * 1000

        result = {
            "status": "healthy",
            "backend": backend,
            "response_time_ms": round(duration_ms, 2),
        }
        if not store.durable:
            result["warning"] = "In-memory store: data is lost on restart"
        return result
    except Exception as e:
        logger = get_logger("health")
        logger.error("store_health_check_failed", error=str(e))
        return {
            "status": "unhealthy",
            "backend": backend,
            "error": str(e),
        }


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if service is running.
    """
    return {
        "status": "healthy",
        "timestamp": _utcnow_iso(),
        "service": "api-relay",
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check endpoint.
    Returns 200 only if the object store answers.
    """
    logger = get_logger("health")

    checks = {"store": await check_store(request)}
    is_ready = all(check.get("status") == "healthy" for check in checks.values())

    response = {
        "ready": is_ready,
        "timestamp": _utcnow_iso(),
        "checks": checks,
    }

    if not is_ready:
        logger.warning("readiness_check_failed", checks=checks)

    return JSONResponse(content=response, status_code=200 if is_ready else 503)


@router.get("/metrics")
async def get_metrics():
    """
    Get application metrics.
    Returns uptime and relay counters.
    """
    return {
        "timestamp": _utcnow_iso(),
        "metrics": metrics.to_dict(),
    }


@router.get("/version")
async def get_version(request: Request):
    """
    Get application version and configuration info.
    """
    settings = request.app.state.settings
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "timestamp": _utcnow_iso(),
        "environment": settings.environment,
        "features": {
            "durable_store": settings.redis_url is not None,
            "admin_api": settings.admin_token is not None,
            "quota_mode": settings.quota_mode,
            "legacy_routes": settings.legacy_routes_enabled,
            "auth_rate_limiting": settings.rate_limit_enabled,
        },
    }


__all__ = ["router", "metrics"]
