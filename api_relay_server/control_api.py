"""
Control API: self-service auth, admin management and user key management.

- ``/api/auth``: register and login (no credential, throttled)
- ``/api/admin``: services, users, logs, usage and keys (``x-admin-token``)
- ``/api/admin/routes``: legacy shared-token routes (only when enabled)
- ``/api/user``: services with personal usage and API keys (bearer session)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api_relay_server.auth import (
    CredentialGuard,
    get_guard,
    get_repositories,
    require_admin,
    require_user,
)
from api_relay_server.entities import (
    ApiKey,
    LegacyRoute,
    Service,
    Session,
    UsageKey,
    UserStatus,
    generate_id,
    generate_secret,
)
from api_relay_server.logging_config import get_logger
from api_relay_server.models import (
    ApiKeyCreate,
    Credentials,
    RegisterRequest,
    RouteCreate,
    ServiceCreate,
    ServiceUpdate,
    UserUpdate,
)
from api_relay_server.rate_limiting import auth_endpoint_limit
from api_relay_server.repositories import LOG_LIST_DEFAULT, Repositories

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])
legacy_router = APIRouter(prefix="/api/admin/routes", tags=["legacy"], dependencies=[Depends(require_admin)])
user_router = APIRouter(prefix="/api/user", tags=["user"])


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# --- Auth ---

@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
@auth_endpoint_limit()
async def register(request: Request, body: RegisterRequest, guard: CredentialGuard = Depends(get_guard)):
    """Self-registration; the account waits for admin approval."""
    user = await guard.register(body.username, body.password)
    return {"ok": True, "user": user.to_public_dict()}


@auth_router.post("/login")
@auth_endpoint_limit()
async def login(request: Request, body: Credentials, guard: CredentialGuard = Depends(get_guard)):
    """Exchange username/password for a 24h bearer session."""
    session = await guard.login(body.username, body.password)
    return {
        "ok": True,
        "token": session.token,
        "expiresAt": session.expires_at,
        "username": session.username,
    }


# --- Admin: services ---

@admin_router.post("/services", status_code=status.HTTP_201_CREATED)
async def create_service(body: ServiceCreate, repos: Repositories = Depends(get_repositories)):
    service = Service(
        id=generate_id("svc"),
        name=body.name,
        target_url=body.target_url,
        method=body.method,
        limit=body.limit,
        docs=body.docs,
        active=body.active,
    )
    await repos.services.save(service)
    logger.info("service_created", service_id=service.id, target_url=service.target_url, limit=service.limit)
    return {"ok": True, "item": service.to_dict()}


@admin_router.get("/services")
async def list_services(repos: Repositories = Depends(get_repositories)):
    services = await repos.services.list()
    return {"ok": True, "items": [service.to_dict() for service in services]}


@admin_router.get("/services/{service_id}")
async def get_service(service_id: str, repos: Repositories = Depends(get_repositories)):
    service = await repos.services.get(service_id)
    if not service:
        raise _not_found("Service tidak ditemukan")
    return {"ok": True, "item": service.to_dict()}


@admin_router.patch("/services/{service_id}")
async def update_service(service_id: str, body: ServiceUpdate, repos: Repositories = Depends(get_repositories)):
    service = await repos.services.get(service_id)
    if not service:
        raise _not_found("Service tidak ditemukan")

    for field_name in body.model_fields_set:
        value = getattr(body, field_name)
        if value is not None:
            setattr(service, field_name, value)

    await repos.services.save(service)
    logger.info("service_updated", service_id=service_id, fields=sorted(body.model_fields_set))
    return {"ok": True, "item": service.to_dict()}


@admin_router.delete("/services/{service_id}")
async def delete_service(service_id: str, repos: Repositories = Depends(get_repositories)):
    """Keys and usage referencing the service are left in place."""
    await repos.services.delete(service_id)
    logger.info("service_deleted", service_id=service_id)
    return {"ok": True}


# --- Admin: users ---

@admin_router.get("/users")
async def list_users(repos: Repositories = Depends(get_repositories)):
    users = await repos.users.list()
    return {"ok": True, "items": [user.to_public_dict() for user in users]}


@admin_router.patch("/users/{username}")
async def update_user(username: str, body: UserUpdate, repos: Repositories = Depends(get_repositories)):
    """Approve or reject an account."""
    user = await repos.users.get(username)
    if not user:
        raise _not_found("User tidak ditemukan")

    previous = user.status
    user.status = body.status
    await repos.users.save(user)
    logger.info("user_status_changed", username=username, previous=previous.value, status=user.status.value)
    return {"ok": True, "item": user.to_public_dict()}


@admin_router.delete("/users/{username}")
async def delete_user(username: str, repos: Repositories = Depends(get_repositories)):
    await repos.users.delete(username)
    logger.info("user_deleted", username=username)
    return {"ok": True}


@admin_router.post("/users/{username}/revoke-sessions")
async def revoke_user_sessions(username: str, guard: CredentialGuard = Depends(get_guard)):
    revoked = await guard.revoke_sessions(username)
    return {"ok": True, "revoked": revoked}


# --- Admin: keys, logs, usage ---

@admin_router.get("/keys")
async def list_all_keys(
    username: Optional[str] = None,
    service_id: Optional[str] = Query(None, alias="serviceId"),
    repos: Repositories = Depends(get_repositories),
):
    keys = await repos.api_keys.list(username=username, service_id=service_id)
    return {"ok": True, "items": [key.to_dict() for key in keys]}


@admin_router.delete("/keys/{key}")
async def delete_any_key(key: str, repos: Repositories = Depends(get_repositories)):
    await repos.api_keys.delete(key)
    logger.info("api_key_deleted", by="admin")
    return {"ok": True}


@admin_router.get("/logs")
async def list_logs(limit: Optional[str] = None, repos: Repositories = Depends(get_repositories)):
    """Newest first; ``limit`` defaults to 50 and is clamped to 1..200."""
    items = await repos.logs.list(limit if limit is not None else LOG_LIST_DEFAULT)
    return {"ok": True, "items": [entry.to_dict() for entry in items]}


@admin_router.delete("/logs")
async def clear_logs(repos: Repositories = Depends(get_repositories)):
    deleted = await repos.logs.clear()
    logger.info("logs_cleared", deleted=deleted)
    return {"ok": True, "deleted": deleted}


@admin_router.get("/usage")
async def list_usage(
    username: Optional[str] = None,
    service_id: Optional[str] = Query(None, alias="serviceId"),
    repos: Repositories = Depends(get_repositories),
):
    counters = await repos.usage.list(service_id=service_id, username=username)
    return {"ok": True, "items": [counter.to_dict() for counter in counters]}


@admin_router.delete("/usage/{service_id}/{username}")
async def reset_usage(service_id: str, username: str, repos: Repositories = Depends(get_repositories)):
    try:
        await repos.usage.reset(UsageKey(service_id, username))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info("usage_reset", service_id=service_id, username=username)
    return {"ok": True}


# --- Legacy shared-token routes ---

@legacy_router.post("", status_code=status.HTTP_201_CREATED)
async def create_route(body: RouteCreate, repos: Repositories = Depends(get_repositories)):
    route = LegacyRoute(
        id=generate_id("api"),
        name=body.name,
        target_url=body.target_url,
        method=body.method,
    )
    user_token = generate_secret()
    await repos.routes.save(route)
    await repos.routes.save_token(route.id, user_token)
    logger.info("legacy_route_created", route_id=route.id, method=route.method)
    return {"ok": True, "item": {**route.to_dict(), "userToken": user_token}}


@legacy_router.get("")
async def list_routes(repos: Repositories = Depends(get_repositories)):
    items = []
    for route in await repos.routes.list():
        items.append({**route.to_dict(), "userToken": await repos.routes.get_token(route.id)})
    return {"ok": True, "items": items}


@legacy_router.delete("/{route_id}")
async def delete_route(route_id: str, repos: Repositories = Depends(get_repositories)):
    await repos.routes.delete(route_id)
    logger.info("legacy_route_deleted", route_id=route_id)
    return {"ok": True}


# --- User ---

@user_router.get("/me")
async def me(session: Session = Depends(require_user), repos: Repositories = Depends(get_repositories)):
    user = await repos.users.get(session.username)
    if not user:
        raise _not_found("User tidak ditemukan")
    return {"ok": True, "user": user.to_public_dict(), "expiresAt": session.expires_at}


@user_router.get("/services")
async def list_my_services(session: Session = Depends(require_user), repos: Repositories = Depends(get_repositories)):
    """Active services with the caller's usage against each limit."""
    usage = {counter.service_id: counter for counter in await repos.usage.list(username=session.username)}

    items = []
    for service in await repos.services.list(active_only=True):
        counter = usage.get(service.id)
        count = counter.count if counter else 0
        items.append({
            "id": service.id,
            "name": service.name,
            "method": service.method,
            "docs": service.docs,
            "limit": service.limit,
            "createdAt": service.created_at,
            "usage": {
                "count": count,
                "remaining": max(0, service.limit - count) if service.limit > 0 else None,
                "lastRequest": counter.last_request if counter else None,
            },
        })
    return {"ok": True, "items": items}


@user_router.get("/keys")
async def list_my_keys(session: Session = Depends(require_user), repos: Repositories = Depends(get_repositories)):
    keys = await repos.api_keys.list(username=session.username)
    return {"ok": True, "items": [key.to_dict() for key in keys]}


@user_router.post("/keys", status_code=status.HTTP_201_CREATED)
async def create_my_key(
    body: ApiKeyCreate,
    session: Session = Depends(require_user),
    repos: Repositories = Depends(get_repositories),
):
    """Mint a key for one active service; only approved accounts may do so."""
    user = await repos.users.get(session.username)
    if not user or user.status != UserStatus.APPROVED:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Akun belum disetujui admin")

    service = await repos.services.get(body.service_id)
    if not service or not service.active:
        raise _not_found("Service tidak ditemukan")

    api_key = ApiKey(
        key=generate_secret("rk"),
        name=body.name.strip() or service.name,
        service_id=service.id,
        username=user.username,
    )
    await repos.api_keys.save(api_key)
    logger.info("api_key_created", service_id=service.id, username=user.username)
    return {"ok": True, "item": api_key.to_dict()}


@user_router.delete("/keys/{key}")
async def delete_my_key(key: str, session: Session = Depends(require_user), repos: Repositories = Depends(get_repositories)):
    api_key = await repos.api_keys.get(key)
    if not api_key or api_key.username != session.username:
        raise _not_found("API key tidak ditemukan")
    await repos.api_keys.delete(key)
    logger.info("api_key_deleted", by="owner", username=session.username)
    return {"ok": True}
