"""
Relay dispatcher: the proxy core behind ``/u/{serviceId}``.

Per request:
1. Resolve the service (404 if missing or inactive)
2. Validate the ``x-api-key`` credential (401) and its owner (403)
3. Consult the quota tracker (429)
4. Forward method, headers, body and merged query string upstream
5. Record usage or a failure log entry, then stream the upstream response

The relay makes exactly one upstream attempt per inbound request. Every
non-2xx answer and every transport failure is returned to the caller and
written to the log store before the response starts.
"""

import hmac
import time
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from api_relay_server.auth import API_KEY_HEADER, CredentialGuard, get_guard, get_repositories
from api_relay_server.entities import LegacyRoute, LogEntry
from api_relay_server.health import metrics
from api_relay_server.logging_config import get_logger, log_relay_result, log_transport_failure
from api_relay_server.quota import QuotaTracker
from api_relay_server.repositories import Repositories

logger = get_logger(__name__)

USER_TOKEN_HEADER = "x-user-token"

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET,POST,PUT,PATCH,DELETE,OPTIONS",
    "access-control-allow-headers": "content-type,authorization,x-admin-token,x-api-key,x-user-token",
}

# Connection-scoped headers never forwarded in either direction
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

BODYLESS_METHODS = {"GET", "HEAD"}


def merge_query(target_url: str, inbound: Iterable[Tuple[str, str]]) -> str:
    """
    Merge inbound query parameters onto the upstream URL.

    Target parameters survive unless the inbound request names the same key,
    in which case every inbound value for that key replaces them.
    """
    inbound = list(inbound)
    if not inbound:
        return target_url

    parts = urlsplit(target_url)
    inbound_keys = {key for key, _ in inbound}
    merged = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in inbound_keys
    ]
    merged.extend(inbound)
    return urlunsplit(parts._replace(query=urlencode(merged)))


def forward_headers(raw_headers: Iterable[Tuple[bytes, bytes]], drop: Set[str]) -> List[Tuple[bytes, bytes]]:
    """
    Inbound headers minus host, credentials in ``drop`` and hop-by-hop headers.

    Values stay raw bytes; httpx would ASCII-encode ``str`` values and reject
    obs-text.
    """
    excluded = {"host", "content-length"} | HOP_BY_HOP_HEADERS | {name.lower() for name in drop}
    return [
        (name, value)
        for name, value in raw_headers
        if name.decode("latin-1").lower() not in excluded
    ]


def response_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    """Upstream headers with hop-by-hop fields removed and CORS overlaid."""
    excluded = HOP_BY_HOP_HEADERS | set(CORS_HEADERS)
    headers = [
        (name, value)
        for name, value in raw_headers
        if name.decode("latin-1").lower() not in excluded
    ]
    headers.extend((name.encode("latin-1"), value.encode("latin-1")) for name, value in CORS_HEADERS.items())
    return headers


async def _close_upstream(upstream: httpx.Response, client: httpx.AsyncClient) -> None:
    await upstream.aclose()
    await client.aclose()


class RelayDispatcher:
    """Forward authorized requests to their upstream target"""

    def __init__(
        self,
        repos: Repositories,
        guard: CredentialGuard,
        quota: QuotaTracker,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        legacy_enabled: bool = False,
    ):
        """
        Initialize the dispatcher

        Args:
            repos: Repository bundle bound to the active store
            guard: Credential guard for API-key checks
            quota: Quota tracker for the (service, user) counters
            timeout: Deadline in seconds for each upstream call
            transport: Optional httpx transport (tests inject a MockTransport)
            legacy_enabled: Fall back to shared-token routes for unknown ids
        """
        self.repos = repos
        self.guard = guard
        self.quota = quota
        self.timeout = timeout
        self.transport = transport
        self.legacy_enabled = legacy_enabled

    async def dispatch(self, request: Request, route_id: str) -> Response:
        """Run the full relay state machine for one inbound request."""
        metrics.increment_relay_requests()

        service = await self.repos.services.get(route_id)
        if service is None and self.legacy_enabled:
            route = await self.repos.routes.get(route_id)
            if route is not None:
                return await self.dispatch_legacy(request, route)

        if service is None or not service.active:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Service tidak ditemukan"
            )

        try:
            _, user = await self.guard.authorize_api_key(request.headers.get(API_KEY_HEADER), service.id)
        except HTTPException:
            metrics.increment_auth_failures()
            raise

        decision = await self.quota.check(service, user.username)
        if not decision.allowed:
            metrics.increment_quota_rejections()
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Kuota service habis"
            )

        upstream, client = await self._send(request, service.id, service.target_url, drop={API_KEY_HEADER})
        if upstream is None:
            await self.quota.record(service, user.username, decision, success=False)
            return self._bad_gateway()

        try:
            await self.quota.record(service, user.username, decision, success=upstream.is_success)
            return await self._stream_back(upstream, client, service.id, service.target_url)
        except Exception:
            await _close_upstream(upstream, client)
            raise

    async def dispatch_legacy(self, request: Request, route: LegacyRoute) -> Response:
        """
        Shared-token mode: one opaque token per route, optional method pin,
        no per-user accounts and no quota.
        """
        if not route.active:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Route user tidak ditemukan"
            )

        expected = await self.repos.routes.get_token(route.id)
        presented = request.headers.get(USER_TOKEN_HEADER) or ""
        if not expected or not presented or not hmac.compare_digest(
            presented.encode("utf-8"), expected.encode("utf-8")
        ):
            metrics.increment_auth_failures()
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized user token"
            )

        if not route.allows(request.method):
            raise HTTPException(
                status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
                detail=f"Method harus {route.method}"
            )

        upstream, client = await self._send(request, route.id, route.target_url, drop={USER_TOKEN_HEADER})
        if upstream is None:
            return self._bad_gateway()
        try:
            return await self._stream_back(upstream, client, route.id, route.target_url)
        except Exception:
            await _close_upstream(upstream, client)
            raise

    async def _send(
        self,
        request: Request,
        route_id: str,
        target_url: str,
        drop: Set[str],
    ) -> Tuple[Optional[httpx.Response], Optional[httpx.AsyncClient]]:
        """
        Perform the single upstream attempt.

        Returns (None, None) after logging when the upstream is unreachable.
        """
        method = request.method.upper()
        url = merge_query(target_url, request.query_params.multi_items())
        headers = forward_headers(request.headers.raw, drop)
        body = None if method in BODYLESS_METHODS else await request.body()

        client = httpx.AsyncClient(
            transport=self.transport,
            timeout=self.timeout,
            follow_redirects=True,
        )
        start_time = time.time()
        try:
            outbound = client.build_request(method, url, headers=headers, content=body)
            upstream = await client.send(outbound, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            duration_ms = (time.time() - start_time) * 1000
            message = str(e) or "Upstream connection failed"
            log_transport_failure(route_id, target_url, message, duration_ms, method=method)
            metrics.increment_transport_failures()
            await self.repos.logs.append(LogEntry(
                status=status.HTTP_502_BAD_GATEWAY,
                message=message,
                route_id=route_id,
                target_url=target_url,
            ))
            return None, None
        except Exception:
            await client.aclose()
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_relay_result(route_id, target_url, upstream.status_code, duration_ms, method=method)
        return upstream, client

    async def _stream_back(
        self,
        upstream: httpx.Response,
        client: httpx.AsyncClient,
        route_id: str,
        target_url: str,
    ) -> Response:
        if upstream.is_success:
            metrics.increment_relay_success()
        else:
            metrics.increment_upstream_errors()
            await self.repos.logs.append(LogEntry(
                status=upstream.status_code,
                message=f"Upstream returned {upstream.status_code}",
                route_id=route_id,
                target_url=target_url,
            ))

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(_close_upstream, upstream, client),
        )
        response.raw_headers = response_headers(upstream.headers.raw)
        return response

    @staticmethod
    def _bad_gateway() -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": "Gagal terhubung ke API tujuan"},
            headers=CORS_HEADERS,
        )


def get_dispatcher(
    request: Request,
    repos: Repositories = Depends(get_repositories),
    guard: CredentialGuard = Depends(get_guard),
) -> RelayDispatcher:
    """FastAPI dependency building a dispatcher from the app's state"""
    settings = request.app.state.settings
    return RelayDispatcher(
        repos,
        guard,
        QuotaTracker(repos.usage, settings.quota_mode),
        timeout=settings.upstream_timeout_seconds,
        transport=request.app.state.transport,
        legacy_enabled=settings.legacy_routes_enabled,
    )
