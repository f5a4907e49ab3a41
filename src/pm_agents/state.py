"""Tenant configuration stores (in-memory, Redis-backed, TTL cache)."""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from loguru import logger
from redis import asyncio as aioredis

from .config import Config
from .redis_client import get_redis_client

TENANT_CONFIG_PREFIX = "tenant_config:"


class TenantConfigStore(ABC):
    """Key/value configuration scoped per tenant (``ai.autonomy.*``, ``ai.agent.*``)."""

    @abstractmethod
    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        """Return the stored value or None when the key is unset."""

    @abstractmethod
    async def set(self, tenant_id: str, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""


class InMemoryTenantConfigStore(TenantConfigStore):
    """Process-local store for single-worker deployments and tests."""

    def __init__(self, initial: Optional[dict[tuple[str, str], Any]] = None):
        self._values: dict[tuple[str, str], Any] = dict(initial or {})

    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        return self._values.get((tenant_id, key))

    async def set(self, tenant_id: str, key: str, value: Any) -> None:
        self._values[(tenant_id, key)] = value


class RedisTenantConfigStore(TenantConfigStore):
    """
    Redis-backed tenant config with JSON values.

    Errors propagate to the caller; the autonomy resolver owns the fail-safe
    fallback so a lookup failure is never mistaken for "unset".
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self._redis_client = redis_client

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis_client is None:
            self._redis_client = await get_redis_client()
        return self._redis_client

    @staticmethod
    def _key(tenant_id: str, key: str) -> str:
        return f"{TENANT_CONFIG_PREFIX}{tenant_id}:{key}"

    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        redis = await self._get_redis()
        raw = await redis.get(self._key(tenant_id, key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Non-JSON tenant config value for {tenant_id}:{key}, using raw string")
            return raw

    async def set(self, tenant_id: str, key: str, value: Any) -> None:
        redis = await self._get_redis()
        await redis.set(self._key(tenant_id, key), json.dumps(value))


class CachedTenantConfigStore(TenantConfigStore):
    """
    Read-through TTL cache in front of another store.

    Entries are keyed by (tenant_id, key) so one tenant never sees another
    tenant's value. Writes go through and refresh the entry.
    """

    def __init__(
        self,
        backend: TenantConfigStore,
        ttl_seconds: float = Config.TENANT_CONFIG_CACHE_TTL,
        clock=time.monotonic,
    ):
        self._backend = backend
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        cache_key = (tenant_id, key)
        entry = self._entries.get(cache_key)
        now = self._clock()
        if entry is not None and now - entry[0] < self._ttl:
            return entry[1]
        value = await self._backend.get(tenant_id, key)
        async with self._lock:
            self._entries[cache_key] = (now, value)
        return value

    async def set(self, tenant_id: str, key: str, value: Any) -> None:
        await self._backend.set(tenant_id, key, value)
        async with self._lock:
            self._entries[(tenant_id, key)] = (self._clock(), value)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        """Drop cached entries for one tenant, or all of them."""
        if tenant_id is None:
            self._entries.clear()
            return
        for cache_key in [k for k in self._entries if k[0] == tenant_id]:
            del self._entries[cache_key]
