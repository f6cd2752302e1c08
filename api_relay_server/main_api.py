import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from api_relay_server.config import Settings, settings as default_settings
from api_relay_server.control_api import admin_router, auth_router, legacy_router, user_router
from api_relay_server.entities import LogEntry, now_ms
from api_relay_server.health import router as health_router
from api_relay_server.logging_config import (
    get_logger,
    log_exception,
    log_request_end,
    log_request_start,
    setup_logging,
)
from api_relay_server.rate_limiting import apply_rate_limits
from api_relay_server.relay import CORS_HEADERS, RelayDispatcher, get_dispatcher
from api_relay_server.repositories import LogRepository
from api_relay_server.store import ObjectStore, create_store


RELAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]

relay_router = APIRouter(tags=["relay"])


@relay_router.api_route("/u/{service_id}", methods=RELAY_METHODS)
@relay_router.api_route("/u/{service_id}/{rest:path}", methods=RELAY_METHODS)
async def relay(request: Request, service_id: str, dispatcher: RelayDispatcher = Depends(get_dispatcher)):
    """Forward the request to the service's upstream; trailing path segments are ignored."""
    return await dispatcher.dispatch(request, service_id)


def _with_cors(response: Response) -> Response:
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


def _route_id_from_path(path: str) -> Optional[str]:
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "u" and parts[1]:
        return parts[1]
    return None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render every HTTP error as ``{"error": message}``."""
    detail = exc.detail
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Endpoint tidak ditemukan"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and field errors are client errors (400)."""
    errors = exc.errors()
    message = "Request tidak valid"
    if errors:
        first = errors[0]
        ctx_error = (first.get("ctx") or {}).get("error")
        if first.get("type") == "json_invalid" or tuple(first.get("loc", ())) == ("body",):
            message = "Body JSON tidak valid"
        elif ctx_error is not None:
            message = str(ctx_error)
        else:
            field = ".".join(str(part) for part in first.get("loc", ())[1:])
            message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=400, content={"error": message})


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ObjectStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Settings to run with (defaults to the environment)
        store: Object store handle (defaults to Redis or memory per settings)
        transport: Optional httpx transport for upstream calls
        clock: Epoch-millisecond clock used for session expiry
    """
    settings = settings or default_settings
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file_path if settings.log_file_enabled else None,
        log_max_bytes=settings.log_file_max_size,
        log_backup_count=settings.log_file_backup_count,
    )
    logger = get_logger("startup")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "relay_started",
            version=settings.app_version,
            environment=settings.environment,
            durable_store=app.state.store.durable,
            quota_mode=settings.quota_mode,
            legacy_routes=settings.legacy_routes_enabled,
        )
        if settings.admin_token is None:
            logger.warning("admin_api_disabled", message="ADMIN_TOKEN is not set; admin requests are rejected")
        yield
        await app.state.store.close()
        logger.info("relay_stopped")

    app = FastAPI(
        title="API Relay",
        description="Multi-tenant HTTP relay with per-user API keys and quotas.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store if store is not None else create_store(settings)
    app.state.transport = transport
    app.state.clock = clock or now_ms

    apply_rate_limits(app, settings)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    @app.middleware("http")
    async def relay_boundary_middleware(request: Request, call_next):
        """
        Outermost boundary: preflight, CORS, request logging and the
        last-resort 500 for anything the routes did not handle.
        """
        request_id = request.headers.get(settings.request_id_header) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        if request.method == "OPTIONS":
            response = Response(status_code=204)
            response.headers[settings.request_id_header] = request_id
            return _with_cors(response)

        client_ip = request.client.host if request.client else "unknown"
        start_time = time.time()
        log_request_start(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            client_ip=client_ip,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            log_exception(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                }
            )
            message = str(e) or "Internal server error"
            route_id = _route_id_from_path(request.url.path)
            logs = LogRepository(app.state.store, max_entries=settings.max_log_entries)
            try:
                await logs.append(LogEntry(status=500, message=message, route_id=route_id))
            except Exception as log_error:
                log_exception(log_error, context={"request_id": request_id, "stage": "error_log_append"})
            response = JSONResponse(status_code=500, content={"error": message})
            response.headers[settings.request_id_header] = request_id
            return _with_cors(response)

        duration_ms = (time.time() - start_time) * 1000
        log_request_end(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers[settings.request_id_header] = request_id
        return _with_cors(response)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(admin_router)
    if settings.legacy_routes_enabled:
        app.include_router(legacy_router)
    app.include_router(user_router)
    app.include_router(relay_router)

    @app.get("/")
    async def read_root():
        return {
            "ok": True,
            "service": settings.app_name,
            "version": settings.app_version,
            "message": "API relay is running.",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
