"""
Object store adapter.

Uniform async get/put/delete/list-by-prefix access to JSON records laid out as
``<kind>/<id>.json``. Two backends:

- ``RedisObjectStore``: durable, shared between processes
- ``MemoryObjectStore``: process-local dict, data is lost on restart

The memory store is a legitimate deployment mode for single-instance or
development setups, not a cache in front of Redis.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from api_relay_server.logging_config import get_logger

logger = get_logger(__name__)

Record = Dict[str, Any]
Updater = Callable[[Optional[Record]], Optional[Record]]


@dataclass
class StoredObject:
    """A record together with the storage key it was read from."""
    key: str
    value: Record


class ObjectStore(ABC):
    """Async key-value store holding one JSON record per key."""

    durable: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[Record]:
        """Return the record at ``key`` or None."""

    @abstractmethod
    async def put(self, key: str, value: Record) -> None:
        """Create or replace the record at ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    @abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        """Return all keys starting with ``prefix`` (unordered)."""

    @abstractmethod
    async def update(self, key: str, fn: Updater) -> Optional[Record]:
        """
        Atomically replace the record at ``key`` with ``fn(current)``.

        ``fn`` receives None when the key is absent and may return None to
        delete the key. Returns the value that was written.
        """

    async def list(self, prefix: str, limit: Optional[int] = None) -> List[StoredObject]:
        """
        Return records whose key starts with ``prefix``.

        Order is unspecified; callers sort. With ``limit``, only the
        ``limit`` lexically greatest keys are read. Keys that vanish between
        the key scan and the read are skipped.
        """
        keys = await self.keys(prefix)
        if limit is not None:
            keys = sorted(keys, reverse=True)[:limit]
        values = await self._get_many(keys)
        return [
            StoredObject(key=key, value=value)
            for key, value in zip(keys, values)
            if value is not None
        ]

    async def _get_many(self, keys: List[str]) -> List[Optional[Record]]:
        return [await self.get(key) for key in keys]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryObjectStore(ObjectStore):
    """In-process store. Not durable: everything is lost on restart."""

    durable = False

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Record]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw else None

    async def put(self, key: str, value: Record) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = raw

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]

    async def update(self, key: str, fn: Updater) -> Optional[Record]:
        with self._lock:
            raw = self._data.get(key)
            new_value = fn(json.loads(raw) if raw else None)
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = json.dumps(new_value)
            return new_value

    def clear(self) -> None:
        """Drop every record (used by tests and admin tooling)."""
        with self._lock:
            self._data.clear()


class RedisObjectStore(ObjectStore):
    """Durable store backed by Redis string keys holding JSON."""

    durable = True

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        namespace: str = "relay:",
        max_update_retries: int = 20,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.max_update_retries = max_update_retries
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _strip(self, full_key: str) -> str:
        if isinstance(full_key, bytes):
            full_key = full_key.decode("utf-8")
        return full_key[len(self.namespace):]

    @staticmethod
    def _decode(raw: Any) -> Optional[Record]:
        if raw is None or raw == "":
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def get(self, key: str) -> Optional[Record]:
        client = self._get_client()
        return self._decode(await client.get(self._full_key(key)))

    async def put(self, key: str, value: Record) -> None:
        client = self._get_client()
        await client.set(self._full_key(key), json.dumps(value))

    async def delete(self, key: str) -> None:
        client = self._get_client()
        await client.delete(self._full_key(key))

    async def keys(self, prefix: str) -> List[str]:
        client = self._get_client()
        keys = []
        async for full_key in client.scan_iter(match=f"{self._full_key(prefix)}*"):
            keys.append(self._strip(full_key))
        return keys

    async def _get_many(self, keys: List[str]) -> List[Optional[Record]]:
        if not keys:
            return []
        client = self._get_client()
        raws = await client.mget([self._full_key(key) for key in keys])
        return [self._decode(raw) for raw in raws]

    async def update(self, key: str, fn: Updater) -> Optional[Record]:
        client = self._get_client()
        full_key = self._full_key(key)

        for _ in range(self.max_update_retries):
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(full_key)
                    new_value = fn(self._decode(await pipe.get(full_key)))
                    pipe.multi()
                    if new_value is None:
                        pipe.delete(full_key)
                    else:
                        pipe.set(full_key, json.dumps(new_value))
                    await pipe.execute()
                    return new_value
                except WatchError:
                    logger.debug("store_update_conflict", key=key)
                    continue

        raise RuntimeError(f"Concurrent update on {key} did not settle")

    async def ping(self) -> bool:
        client = self._get_client()
        return bool(await client.ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_store(settings) -> ObjectStore:
    """Pick the Redis backend when REDIS_URL is set, else the memory store."""
    if settings.redis_url:
        logger.info("object_store_selected", backend="redis")
        return RedisObjectStore(redis_url=settings.redis_url)

    logger.warning(
        "object_store_selected",
        backend="memory",
        message="In-memory store is not durable; data is lost on restart",
    )
    return MemoryObjectStore()
