"""
Typed repositories over the object store.

Every repository receives the store handle explicitly; there is no shared
module-level state. Lists of users, services and legacy routes are returned
newest first by ``createdAt``; equal timestamps keep ascending storage-key
order (stable sort).
"""

import uuid
from typing import Callable, Dict, List, Optional, TypeVar

from api_relay_server.entities import (
    USAGE_KEY_SEPARATOR,
    ApiKey,
    LegacyRoute,
    LogEntry,
    Service,
    Session,
    UsageCounter,
    UsageKey,
    User,
    now_iso,
    now_ms,
)
from api_relay_server.store import ObjectStore, StoredObject

T = TypeVar("T")

LOG_LIST_DEFAULT = 50
LOG_LIST_MAX = 200


def _newest_first(objects: List[StoredObject], parse: Callable[[Dict], T]) -> List[T]:
    ordered = sorted(objects, key=lambda obj: obj.key)
    ordered = sorted(ordered, key=lambda obj: obj.value.get("createdAt", ""), reverse=True)
    return [parse(obj.value) for obj in ordered]


class UserRepository:
    prefix = "users/"

    def __init__(self, store: ObjectStore):
        self.store = store

    def _key(self, username: str) -> str:
        return f"{self.prefix}{username}.json"

    async def save(self, user: User) -> User:
        await self.store.put(self._key(user.username), user.to_dict())
        return user

    async def get(self, username: str) -> Optional[User]:
        data = await self.store.get(self._key(username))
        return User.from_dict(data) if data else None

    async def list(self) -> List[User]:
        return _newest_first(await self.store.list(self.prefix), User.from_dict)

    async def delete(self, username: str) -> None:
        await self.store.delete(self._key(username))


class ServiceRepository:
    prefix = "services/"

    def __init__(self, store: ObjectStore):
        self.store = store

    def _key(self, service_id: str) -> str:
        return f"{self.prefix}{service_id}.json"

    async def save(self, service: Service) -> Service:
        await self.store.put(self._key(service.id), service.to_dict())
        return service

    async def get(self, service_id: str) -> Optional[Service]:
        data = await self.store.get(self._key(service_id))
        return Service.from_dict(data) if data else None

    async def list(self, active_only: bool = False) -> List[Service]:
        services = _newest_first(await self.store.list(self.prefix), Service.from_dict)
        if active_only:
            services = [service for service in services if service.active]
        return services

    async def delete(self, service_id: str) -> None:
        await self.store.delete(self._key(service_id))


class ApiKeyRepository:
    prefix = "keys/"

    def __init__(self, store: ObjectStore):
        self.store = store

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}.json"

    async def save(self, api_key: ApiKey) -> ApiKey:
        await self.store.put(self._key(api_key.key), api_key.to_dict())
        return api_key

    async def get(self, key: str) -> Optional[ApiKey]:
        data = await self.store.get(self._key(key))
        return ApiKey.from_dict(data) if data else None

    async def list(
        self,
        username: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> List[ApiKey]:
        keys = _newest_first(await self.store.list(self.prefix), ApiKey.from_dict)
        if username is not None:
            keys = [k for k in keys if k.username == username]
        if service_id is not None:
            keys = [k for k in keys if k.service_id == service_id]
        return keys

    async def delete(self, key: str) -> None:
        await self.store.delete(self._key(key))


class SessionRepository:
    prefix = "sessions/"

    def __init__(self, store: ObjectStore):
        self.store = store

    def _key(self, token: str) -> str:
        return f"{self.prefix}{token}.json"

    async def save(self, session: Session) -> Session:
        await self.store.put(self._key(session.token), session.to_dict())
        return session

    async def get(self, token: str) -> Optional[Session]:
        data = await self.store.get(self._key(token))
        return Session.from_dict(data) if data else None

    async def list(self, username: Optional[str] = None) -> List[Session]:
        sessions = [Session.from_dict(obj.value) for obj in await self.store.list(self.prefix)]
        if username is not None:
            sessions = [s for s in sessions if s.username == username]
        return sessions

    async def delete(self, token: str) -> None:
        await self.store.delete(self._key(token))

    async def delete_for_user(self, username: str) -> int:
        """Delete every session of ``username``; returns how many were removed."""
        sessions = await self.list(username=username)
        for session in sessions:
            await self.delete(session.token)
        return len(sessions)


class UsageRepository:
    prefix = "usage/"

    def __init__(self, store: ObjectStore):
        self.store = store

    def encode_key(self, key: UsageKey) -> str:
        if USAGE_KEY_SEPARATOR in key.service_id or USAGE_KEY_SEPARATOR in key.username:
            raise ValueError(f"Usage key parts must not contain {USAGE_KEY_SEPARATOR!r}")
        return f"{self.prefix}{key.service_id}{USAGE_KEY_SEPARATOR}{key.username}.json"

    def decode_key(self, storage_key: str) -> Optional[UsageKey]:
        """Split ``usage/<sid>___<user>.json`` back into its parts."""
        if not storage_key.startswith(self.prefix) or not storage_key.endswith(".json"):
            return None
        body = storage_key[len(self.prefix):-len(".json")]
        service_id, sep, username = body.partition(USAGE_KEY_SEPARATOR)
        if not sep or not service_id or not username:
            return None
        return UsageKey(service_id, username)

    async def get(self, key: UsageKey) -> UsageCounter:
        """Counters are created lazily; an absent one reads as zero."""
        data = await self.store.get(self.encode_key(key))
        return UsageCounter.from_dict(key, data)

    async def list(
        self,
        service_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> List[UsageCounter]:
        counters = []
        for obj in sorted(await self.store.list(self.prefix), key=lambda o: o.key):
            key = self.decode_key(obj.key)
            if key is None:
                continue
            if service_id is not None and key.service_id != service_id:
                continue
            if username is not None and key.username != username:
                continue
            counters.append(UsageCounter.from_dict(key, obj.value))
        return counters

    async def _apply(self, key: UsageKey, delta: int) -> UsageCounter:
        def bump(current: Optional[Dict]) -> Dict:
            counter = UsageCounter.from_dict(key, current)
            counter.count = max(0, counter.count + delta)
            if delta > 0:
                counter.last_request = now_iso()
            return counter.to_dict()

        return UsageCounter.from_dict(key, await self.store.update(self.encode_key(key), bump))

    async def increment(self, key: UsageKey) -> UsageCounter:
        return await self._apply(key, 1)

    async def decrement(self, key: UsageKey) -> UsageCounter:
        return await self._apply(key, -1)

    async def reserve(self, key: UsageKey, limit: int) -> Optional[UsageCounter]:
        """
        Atomically increment unless the counter already reached ``limit``.

        Returns the updated counter, or None when the limit was reached.
        """
        outcome = {}

        def check_and_bump(current: Optional[Dict]) -> Optional[Dict]:
            counter = UsageCounter.from_dict(key, current)
            if counter.count >= limit:
                outcome["rejected"] = True
                return current
            counter.count += 1
            counter.last_request = now_iso()
            return counter.to_dict()

        written = await self.store.update(self.encode_key(key), check_and_bump)
        if outcome.get("rejected"):
            return None
        return UsageCounter.from_dict(key, written)

    async def reset(self, key: UsageKey) -> None:
        await self.store.delete(self.encode_key(key))


class LogRepository:
    prefix = "logs/"

    def __init__(self, store: ObjectStore, max_entries: int = 500):
        self.store = store
        self.max_entries = max_entries

    def _new_key(self) -> str:
        # Zero-padded epoch ms keeps lexical order equal to time order
        return f"{self.prefix}{now_ms():013d}_{uuid.uuid4().hex[:8]}.json"

    async def append(self, entry: LogEntry) -> LogEntry:
        await self.store.put(self._new_key(), entry.to_dict())
        await self._trim()
        return entry

    async def _trim(self) -> None:
        keys = await self.store.keys(self.prefix)
        excess = len(keys) - self.max_entries
        if excess <= 0:
            return
        for key in sorted(keys)[:excess]:
            await self.store.delete(key)

    async def list(self, limit: Optional[int] = LOG_LIST_DEFAULT) -> List[LogEntry]:
        """Newest entries first; ``limit`` is clamped to [1, 200], zero or junk means 50."""
        try:
            safe_limit = int(limit) if limit else LOG_LIST_DEFAULT
        except (TypeError, ValueError):
            safe_limit = LOG_LIST_DEFAULT
        if safe_limit == 0:
            safe_limit = LOG_LIST_DEFAULT
        safe_limit = max(1, min(safe_limit, LOG_LIST_MAX))

        objects = await self.store.list(self.prefix, limit=safe_limit)
        entries = [LogEntry.from_dict(obj.value) for obj in sorted(objects, key=lambda o: o.key, reverse=True)]
        return sorted(entries, key=lambda e: e.timestamp, reverse=True)

    async def clear(self) -> int:
        keys = await self.store.keys(self.prefix)
        for key in keys:
            await self.store.delete(key)
        return len(keys)


class LegacyRouteRepository:
    prefix = "routes/"
    token_prefix = "token/"

    def __init__(self, store: ObjectStore):
        self.store = store

    async def save(self, route: LegacyRoute) -> LegacyRoute:
        await self.store.put(f"{self.prefix}{route.id}.json", route.to_dict())
        return route

    async def get(self, route_id: str) -> Optional[LegacyRoute]:
        data = await self.store.get(f"{self.prefix}{route_id}.json")
        return LegacyRoute.from_dict(data) if data else None

    async def list(self) -> List[LegacyRoute]:
        return _newest_first(await self.store.list(self.prefix), LegacyRoute.from_dict)

    async def delete(self, route_id: str) -> None:
        await self.store.delete(f"{self.prefix}{route_id}.json")
        await self.store.delete(f"{self.token_prefix}{route_id}.json")

    async def save_token(self, route_id: str, token: str) -> None:
        await self.store.put(
            f"{self.token_prefix}{route_id}.json",
            {"token": token, "updatedAt": now_iso()},
        )

    async def get_token(self, route_id: str) -> Optional[str]:
        data = await self.store.get(f"{self.token_prefix}{route_id}.json")
        return data.get("token") if data else None


class Repositories:
    """All repositories bound to one store handle."""

    def __init__(self, store: ObjectStore, max_log_entries: int = 500):
        self.store = store
        self.users = UserRepository(store)
        self.services = ServiceRepository(store)
        self.api_keys = ApiKeyRepository(store)
        self.sessions = SessionRepository(store)
        self.usage = UsageRepository(store)
        self.logs = LogRepository(store, max_entries=max_log_entries)
        self.routes = LegacyRouteRepository(store)
