"""Per-tenant fixed-window counters for the rate limiter hook."""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from redis import asyncio as aioredis

from .config import Config
from .redis_client import get_redis_client

RATE_LIMIT_PREFIX = "ratelimit:"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class WindowState:
    """Counter state after an increment."""

    count: int
    window_start: int


class RateLimitStore(ABC):
    """
    Shared counter store.

    ``increment`` must be atomic per tenant: concurrent calls for the same
    tenant each observe a distinct post-increment count.
    """

    @abstractmethod
    async def increment(self, tenant_id: str, now_ms: int, window_ms: int) -> WindowState:
        """
        Count one call.

        Starts a fresh window with count 1 when no entry exists or
        ``now_ms - window_start > window_ms``; otherwise increments.
        """

    @abstractmethod
    async def reset(self, tenant_id: str) -> None:
        """Forget the tenant's window."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store; a per-tenant lock serializes increments."""

    def __init__(self):
        self._windows: dict[str, WindowState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def increment(self, tenant_id: str, now_ms: int, window_ms: int) -> WindowState:
        async with self._lock_for(tenant_id):
            entry = self._windows.get(tenant_id)
            if entry is None or now_ms - entry.window_start > window_ms:
                entry = WindowState(count=1, window_start=now_ms)
            else:
                entry = WindowState(count=entry.count + 1, window_start=entry.window_start)
            self._windows[tenant_id] = entry
            return entry

    async def reset(self, tenant_id: str) -> None:
        async with self._lock_for(tenant_id):
            self._windows.pop(tenant_id, None)


# KEYS[1] = counter hash; ARGV = now_ms, window_ms
_INCREMENT_SCRIPT = """
local state = redis.call('HMGET', KEYS[1], 'count', 'window_start')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local count = tonumber(state[1])
local start = tonumber(state[2])
if (not count) or (not start) or (now - start > window) then
  count = 1
  start = now
else
  count = count + 1
end
redis.call('HSET', KEYS[1], 'count', count, 'window_start', start)
redis.call('PEXPIRE', KEYS[1], window * 2)
return {count, start}
"""


class RedisRateLimitStore(RateLimitStore):
    """Multi-process store: the window update runs as a single Lua script."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self._redis_client = redis_client
        self._script = None

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis_client is None:
            self._redis_client = await get_redis_client()
        return self._redis_client

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{tenant_id}"

    async def increment(self, tenant_id: str, now_ms: int, window_ms: int) -> WindowState:
        redis = await self._get_redis()
        if self._script is None:
            self._script = redis.register_script(_INCREMENT_SCRIPT)
        count, start = await self._script(keys=[self._key(tenant_id)], args=[now_ms, window_ms])
        return WindowState(count=int(count), window_start=int(start))

    async def reset(self, tenant_id: str) -> None:
        redis = await self._get_redis()
        await redis.delete(self._key(tenant_id))


class FixedWindowLimiter:
    """
    Admission check over a ``RateLimitStore``.

    Fixed windows let a burst straddling a boundary reach about twice the
    cap; this is accepted behaviour, not a sliding window.
    """

    def __init__(
        self,
        store: RateLimitStore,
        window_ms: int = Config.RATE_LIMIT_WINDOW_MS,
        max_calls: int = Config.RATE_LIMIT_MAX_CALLS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store
        self.window_ms = window_ms
        self.max_calls = max_calls
        self._clock = clock

    async def hit(self, tenant_id: str) -> tuple[bool, WindowState]:
        state = await self.store.increment(tenant_id, self._clock(), self.window_ms)
        return state.count <= self.max_calls, state
