"""Session lifecycle: create, resume, fork and turn persistence."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from loguru import logger

from ..config import Config
from ..errors import SessionNotFound
from .models import AISession, SessionStatus
from .store import SessionStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionService:
    """
    Session state machine.

    States are ``active -> expired`` (detected at resume time by comparing
    ``expires_at``) and ``active -> closed`` on request. Forking never
    changes the parent; it creates a new active child.
    """

    def __init__(
        self,
        store: SessionStore,
        retention_days: int = Config.SESSION_RETENTION_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    def _fresh_expiry(self) -> datetime:
        return self._clock() + self.retention

    async def create(
        self,
        tenant_id: str,
        user_id: str,
        capability: str,
        state: Optional[dict[str, Any]] = None,
    ) -> str:
        now = self._clock()
        session = AISession(
            tenant_id=tenant_id,
            user_id=user_id,
            capability=capability,
            state=dict(state or {}),
            expires_at=now + self.retention,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(session)
        logger.debug(f"Created session {session.id} for {tenant_id}/{capability}")
        return session.id

    async def get(self, session_id: str, tenant_id: str) -> Optional[AISession]:
        return await self.store.get(tenant_id, session_id)

    async def resume(self, session_id: str, tenant_id: str) -> Optional[AISession]:
        """
        Load a live session and push its expiry out by the retention period.

        Missing, foreign, closed and expired sessions all return None; the
        caller starts fresh. An expired row is marked ``expired``.
        """
        session = await self.store.get(tenant_id, session_id)
        if session is None:
            return None
        if session.status == SessionStatus.CLOSED:
            return None
        if session.is_expired(self._clock()):
            if session.status != SessionStatus.EXPIRED:
                await self.store.update_meta(tenant_id, session_id, status=SessionStatus.EXPIRED)
                logger.info(f"Session {session_id} expired at {session.expires_at.isoformat()}")
            return None
        return await self.store.update_meta(tenant_id, session_id, expires_at=self._fresh_expiry())

    async def fork(self, parent_session_id: str, tenant_id: str, user_id: str) -> str:
        """
        Branch a session: new id, copy of the parent's state, turn count 0.

        Raises:
            SessionNotFound: parent missing or owned by another tenant
        """
        parent = await self.store.get(tenant_id, parent_session_id)
        if parent is None:
            logger.warning(f"Fork refused: session {parent_session_id} not found for tenant {tenant_id}")
            raise SessionNotFound(f"Session {parent_session_id} not found")

        # Walk the existing chain so a corrupted row surfaces here, not later
        await self.lineage(parent_session_id, tenant_id)

        now = self._clock()
        child = AISession(
            tenant_id=tenant_id,
            user_id=user_id,
            capability=parent.capability,
            parent_session_id=parent.id,
            state=dict(parent.state),
            expires_at=now + self.retention,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(child)
        logger.info(f"Forked session {parent.id} -> {child.id}")
        return child.id

    async def lineage(self, session_id: str, tenant_id: str) -> list[str]:
        """
        Ids from ``session_id`` up to its root.

        Raises:
            ValueError: the parent chain loops back on itself
        """
        chain: list[str] = []
        seen: set[str] = set()
        current: Optional[str] = session_id
        while current is not None:
            if current in seen:
                raise ValueError(f"Session ancestry cycle at {current}")
            seen.add(current)
            chain.append(current)
            session = await self.store.get(tenant_id, current)
            if session is None:
                break
            current = session.parent_session_id
        return chain

    async def persist_turn(
        self,
        session_id: str,
        tenant_id: str,
        user_id: str,
        capability: str,
        turn_count: int,
        state: dict[str, Any],
    ) -> Optional[AISession]:
        """
        Record a finished turn and extend expiry.

        Unknown (tenant, id) pairs are skipped; the caller may be using an
        ephemeral id. Raises ``StaleWrite`` on a lower turn count.
        """
        updated = await self.store.update_turn(
            tenant_id, session_id, turn_count, state, self._fresh_expiry()
        )
        if updated is None:
            logger.debug(
                f"No session {session_id} for {tenant_id}/{user_id} ({capability}), skipping turn"
            )
        return updated

    async def close(self, session_id: str, tenant_id: str) -> Optional[AISession]:
        return await self.store.update_meta(tenant_id, session_id, status=SessionStatus.CLOSED)
