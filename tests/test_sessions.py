"""
Tests for session lifecycle.

Covers create/resume/expiry, fork lineage, tenant scoping and optimistic
turn writes, for the in-memory store and (when reachable) Redis.
"""

from datetime import datetime, timedelta, timezone

import pytest

from pm_agents.errors import SessionNotFound, StaleWrite
from pm_agents.sessions import (
    AISession,
    InMemorySessionStore,
    RedisSessionStore,
    SessionService,
    SessionStatus,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return SessionService(InMemorySessionStore(), retention_days=30, clock=clock)


# ============================================================================
# CREATE / RESUME / EXPIRY
# ============================================================================


@pytest.mark.asyncio
async def test_create_and_resume(service, clock):
    session_id = await service.create("tenant-a", "user-1", "nl_query", state={"topic": "risks"})

    session = await service.resume(session_id, "tenant-a")

    assert session is not None
    assert session.id == session_id
    assert session.turn_count == 0
    assert session.state == {"topic": "risks"}
    assert session.status == SessionStatus.ACTIVE
    assert session.expires_at == clock.now + timedelta(days=30)


@pytest.mark.asyncio
async def test_resume_extends_expiry(service, clock):
    session_id = await service.create("tenant-a", "user-1", "nl_query")

    clock.advance(days=20)
    session = await service.resume(session_id, "tenant-a")

    assert session.expires_at == clock.now + timedelta(days=30)


@pytest.mark.asyncio
async def test_resume_after_expiry_returns_none_and_marks_expired(service, clock):
    session_id = await service.create("tenant-a", "user-1", "nl_query")

    clock.advance(days=31)

    assert await service.resume(session_id, "tenant-a") is None
    stored = await service.get(session_id, "tenant-a")
    assert stored.status == SessionStatus.EXPIRED


@pytest.mark.asyncio
async def test_resume_closed_session_returns_none(service):
    session_id = await service.create("tenant-a", "user-1", "nl_query")
    await service.close(session_id, "tenant-a")

    assert await service.resume(session_id, "tenant-a") is None


@pytest.mark.asyncio
async def test_sessions_are_tenant_scoped(service):
    session_id = await service.create("tenant-a", "user-1", "nl_query")

    assert await service.resume(session_id, "tenant-b") is None
    assert await service.get(session_id, "tenant-b") is None


@pytest.mark.asyncio
async def test_resume_unknown_session_returns_none(service):
    assert await service.resume("no-such-session", "tenant-a") is None


# ============================================================================
# FORK
# ============================================================================


@pytest.mark.asyncio
async def test_fork_copies_state_and_links_parent(service):
    parent_id = await service.create("tenant-a", "user-1", "wbs_generator", state={"draft": 1})
    await service.persist_turn(parent_id, "tenant-a", "user-1", "wbs_generator", 3, {"draft": 2})

    child_id = await service.fork(parent_id, "tenant-a", "user-2")
    child = await service.get(child_id, "tenant-a")
    parent = await service.get(parent_id, "tenant-a")

    assert child_id != parent_id
    assert child.parent_session_id == parent_id
    assert child.turn_count == 0
    assert child.state == {"draft": 2}
    assert child.user_id == "user-2"
    assert child.capability == "wbs_generator"
    # Parent untouched
    assert parent.turn_count == 3
    assert parent.parent_session_id is None


@pytest.mark.asyncio
async def test_fork_state_is_a_copy(service):
    parent_id = await service.create("tenant-a", "user-1", "nl_query", state={"k": "v"})
    child_id = await service.fork(parent_id, "tenant-a", "user-1")

    await service.persist_turn(child_id, "tenant-a", "user-1", "nl_query", 1, {"k": "changed"})

    parent = await service.get(parent_id, "tenant-a")
    assert parent.state == {"k": "v"}


@pytest.mark.asyncio
async def test_fork_chain_lineage_is_acyclic(service):
    root = await service.create("tenant-a", "user-1", "nl_query")
    child = await service.fork(root, "tenant-a", "user-1")
    grandchild = await service.fork(child, "tenant-a", "user-1")

    assert await service.lineage(grandchild, "tenant-a") == [grandchild, child, root]


@pytest.mark.asyncio
async def test_fork_of_foreign_session_is_not_found(service):
    session_id = await service.create("tenant-a", "user-1", "nl_query")

    with pytest.raises(SessionNotFound):
        await service.fork(session_id, "tenant-b", "user-9")


@pytest.mark.asyncio
async def test_fork_of_missing_session_is_not_found(service):
    with pytest.raises(SessionNotFound):
        await service.fork("missing", "tenant-a", "user-1")


@pytest.mark.asyncio
async def test_lineage_detects_cycles():
    store = InMemorySessionStore()
    service = SessionService(store)
    expires = datetime.now(timezone.utc) + timedelta(days=1)
    await store.insert(AISession("tenant-a", "u", "nl_query", expires, id="a", parent_session_id="b"))
    await store.insert(AISession("tenant-a", "u", "nl_query", expires, id="b", parent_session_id="a"))

    with pytest.raises(ValueError, match="cycle"):
        await service.lineage("a", "tenant-a")


# ============================================================================
# TURN PERSISTENCE
# ============================================================================


@pytest.mark.asyncio
async def test_persist_turn_updates_state(service):
    session_id = await service.create("tenant-a", "user-1", "nl_query")

    updated = await service.persist_turn(session_id, "tenant-a", "user-1", "nl_query", 2, {"a": 1})

    assert updated.turn_count == 2
    assert updated.state == {"a": 1}


@pytest.mark.asyncio
async def test_stale_turn_write_is_rejected(service):
    session_id = await service.create("tenant-a", "user-1", "nl_query")
    await service.persist_turn(session_id, "tenant-a", "user-1", "nl_query", 5, {"v": "new"})

    with pytest.raises(StaleWrite):
        await service.persist_turn(session_id, "tenant-a", "user-1", "nl_query", 4, {"v": "old"})

    stored = await service.get(session_id, "tenant-a")
    assert stored.turn_count == 5
    assert stored.state == {"v": "new"}


@pytest.mark.asyncio
async def test_equal_turn_write_is_accepted(service):
    session_id = await service.create("tenant-a", "user-1", "nl_query")
    await service.persist_turn(session_id, "tenant-a", "user-1", "nl_query", 1, {"v": 1})

    updated = await service.persist_turn(session_id, "tenant-a", "user-1", "nl_query", 1, {"v": 2})

    assert updated.state == {"v": 2}


@pytest.mark.asyncio
async def test_persist_turn_for_unknown_session_is_skipped(service):
    assert await service.persist_turn("ephemeral", "tenant-a", "user-1", "nl_query", 1, {}) is None


def test_session_dict_round_trip():
    session = AISession(
        "tenant-a",
        "user-1",
        "nl_query",
        datetime(2026, 2, 1, tzinfo=timezone.utc),
        parent_session_id="p",
        turn_count=3,
        state={"x": [1, 2]},
    )

    restored = AISession.from_dict(session.to_dict())

    assert restored == session


# ============================================================================
# REDIS STORE
# ============================================================================


@pytest.mark.requires_redis
@pytest.mark.asyncio
async def test_redis_session_store_lifecycle(redis_client, clock):
    service = SessionService(RedisSessionStore(redis_client), retention_days=30, clock=clock)

    parent_id = await service.create("tenant-a", "user-1", "nl_query", state={"k": 1})
    await service.persist_turn(parent_id, "tenant-a", "user-1", "nl_query", 2, {"k": 2})
    child_id = await service.fork(parent_id, "tenant-a", "user-1")

    with pytest.raises(StaleWrite):
        await service.persist_turn(parent_id, "tenant-a", "user-1", "nl_query", 1, {"k": 0})

    child = await service.get(child_id, "tenant-a")
    assert child.parent_session_id == parent_id
    assert child.state == {"k": 2}
    assert await service.get(parent_id, "tenant-b") is None

    clock.advance(days=31)
    assert await service.resume(parent_id, "tenant-a") is None
    assert (await service.get(parent_id, "tenant-a")).status == SessionStatus.EXPIRED
