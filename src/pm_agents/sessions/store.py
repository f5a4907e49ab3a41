"""Session persistence: in-memory and Redis, both tenant-scoped."""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from loguru import logger
from redis import asyncio as aioredis

from ..errors import StaleWrite
from ..redis_client import get_redis_client
from .models import AISession, SessionStatus

SESSION_PREFIX = "ai_session:"


class SessionStore(ABC):
    """
    Session CRUD. Every read and write is keyed by (tenant_id, session_id);
    a row owned by another tenant is indistinguishable from a missing one.
    """

    @abstractmethod
    async def insert(self, session: AISession) -> None: ...

    @abstractmethod
    async def get(self, tenant_id: str, session_id: str) -> Optional[AISession]: ...

    @abstractmethod
    async def update_turn(
        self,
        tenant_id: str,
        session_id: str,
        turn_count: int,
        state: dict[str, Any],
        expires_at: datetime,
    ) -> Optional[AISession]:
        """
        Write a turn with optimistic concurrency.

        Returns:
            The updated row, or None when no row matches

        Raises:
            StaleWrite: ``turn_count`` is lower than the stored count
        """

    @abstractmethod
    async def update_meta(
        self,
        tenant_id: str,
        session_id: str,
        status: Optional[SessionStatus] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[AISession]:
        """Change status and/or expiry without touching turns."""


def _check_turn(session: AISession, turn_count: int) -> None:
    if turn_count < session.turn_count:
        raise StaleWrite(
            f"Session {session.id} is at turn {session.turn_count}, refusing turn {turn_count}",
            details={"stored": session.turn_count, "incoming": turn_count},
        )


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self._rows: dict[tuple[str, str], AISession] = {}
        self._lock = asyncio.Lock()

    async def insert(self, session: AISession) -> None:
        async with self._lock:
            key = (session.tenant_id, session.id)
            if key in self._rows:
                raise ValueError(f"Session {session.id} already exists")
            self._rows[key] = copy.deepcopy(session)

    async def get(self, tenant_id: str, session_id: str) -> Optional[AISession]:
        row = self._rows.get((tenant_id, session_id))
        return copy.deepcopy(row) if row is not None else None

    async def update_turn(
        self,
        tenant_id: str,
        session_id: str,
        turn_count: int,
        state: dict[str, Any],
        expires_at: datetime,
    ) -> Optional[AISession]:
        async with self._lock:
            row = self._rows.get((tenant_id, session_id))
            if row is None:
                return None
            _check_turn(row, turn_count)
            row.turn_count = turn_count
            row.state = copy.deepcopy(state)
            row.expires_at = expires_at
            row.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(row)

    async def update_meta(
        self,
        tenant_id: str,
        session_id: str,
        status: Optional[SessionStatus] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[AISession]:
        async with self._lock:
            row = self._rows.get((tenant_id, session_id))
            if row is None:
                return None
            if status is not None:
                row.status = status
            if expires_at is not None:
                row.expires_at = expires_at
            row.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(row)


class RedisSessionStore(SessionStore):
    """
    Sessions as JSON strings under ``ai_session:{tenant}:{id}``.

    Turn writes use WATCH/MULTI so a concurrent writer with a newer turn
    count cannot be overwritten by an older one.
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self._redis_client = redis_client

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis_client is None:
            self._redis_client = await get_redis_client()
        return self._redis_client

    @staticmethod
    def _key(tenant_id: str, session_id: str) -> str:
        return f"{SESSION_PREFIX}{tenant_id}:{session_id}"

    async def insert(self, session: AISession) -> None:
        redis = await self._get_redis()
        created = await redis.set(
            self._key(session.tenant_id, session.id), json.dumps(session.to_dict()), nx=True
        )
        if not created:
            raise ValueError(f"Session {session.id} already exists")

    async def get(self, tenant_id: str, session_id: str) -> Optional[AISession]:
        redis = await self._get_redis()
        raw = await redis.get(self._key(tenant_id, session_id))
        if raw is None:
            return None
        return AISession.from_dict(json.loads(raw))

    async def _modify(self, tenant_id: str, session_id: str, mutate) -> Optional[AISession]:
        redis = await self._get_redis()
        key = self._key(tenant_id, session_id)
        async with redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None
                    session = AISession.from_dict(json.loads(raw))
                    mutate(session)
                    session.updated_at = datetime.now(timezone.utc)
                    pipe.multi()
                    pipe.set(key, json.dumps(session.to_dict()))
                    await pipe.execute()
                    return session
                except aioredis.WatchError:
                    logger.debug(f"Session {session_id} changed during update, retrying")
                    continue

    async def update_turn(
        self,
        tenant_id: str,
        session_id: str,
        turn_count: int,
        state: dict[str, Any],
        expires_at: datetime,
    ) -> Optional[AISession]:
        def mutate(session: AISession) -> None:
            _check_turn(session, turn_count)
            session.turn_count = turn_count
            session.state = state
            session.expires_at = expires_at

        return await self._modify(tenant_id, session_id, mutate)

    async def update_meta(
        self,
        tenant_id: str,
        session_id: str,
        status: Optional[SessionStatus] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[AISession]:
        def mutate(session: AISession) -> None:
            if status is not None:
                session.status = status
            if expires_at is not None:
                session.expires_at = expires_at

        return await self._modify(tenant_id, session_id, mutate)
