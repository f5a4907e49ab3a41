"""Pytest fixtures and test utilities for the PM Agents test suite."""

from typing import Any

import pytest
import pytest_asyncio
from redis import asyncio as aioredis

from pm_agents.audit import HookAuditLog, InMemoryAuditLogStore
from pm_agents.llm.gateway import StubModelClient
from pm_agents.runtime import build_runtime
from pm_agents.servers import InMemoryPMDatabase
from pm_agents.state import InMemoryTenantConfigStore
from tests.test_utils import word_count

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
USER = "user-1"


# ============================================================================
# REDIS FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def redis_client():
    """
    Provide a clean Redis client for tests marked ``requires_redis``.

    Yields:
        Redis client connected to localhost:6379

    Cleanup:
        Flushes the test database before and after the test. Skips the test
        when no server is reachable.
    """
    client = aioredis.from_url(
        "redis://localhost:6379",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
    try:
        await client.ping()
    except (aioredis.ConnectionError, aioredis.TimeoutError, OSError):
        await client.aclose()
        pytest.skip("Redis is not reachable on localhost:6379")

    await client.flushdb()

    yield client

    await client.flushdb()
    await client.aclose()


# ============================================================================
# STORE FIXTURES
# ============================================================================


@pytest.fixture
def hook_log_path(tmp_path):
    """
    Temporary hook log file for test isolation.

    Returns:
        Path to a hook_log.jsonl file inside the pytest temp directory
    """
    return tmp_path / "hook_log.jsonl"


@pytest.fixture
def hook_log(hook_log_path):
    return HookAuditLog(str(hook_log_path))


@pytest.fixture
def config_store():
    return InMemoryTenantConfigStore()


@pytest.fixture
def audit_store():
    return InMemoryAuditLogStore()


@pytest.fixture
def db(audit_store):
    return InMemoryPMDatabase(audit_store=audit_store)


# ============================================================================
# RUNTIME FIXTURES
# ============================================================================


@pytest.fixture
def make_runtime(hook_log_path):
    """
    Factory for fully wired in-memory runtimes.

    Defaults to the canned model client and a word-count tokenizer so no
    network access or tokenizer download is needed.

    Args (of the returned factory):
        model_client: ModelClient to use (StubModelClient by default)
        autonomy: optional {tenant_id: mode} written to ``ai.autonomy.default``
        **kwargs: forwarded to build_runtime
    """

    def _make(model_client=None, autonomy: dict[str, Any] = None, **kwargs):
        initial = {}
        for tenant_id, mode in (autonomy or {}).items():
            initial[(tenant_id, "ai.autonomy.default")] = mode
        kwargs.setdefault("config_store", InMemoryTenantConfigStore(initial))
        return build_runtime(
            backend="memory",
            hook_log_path=str(hook_log_path),
            model_client=model_client or StubModelClient(),
            token_counter=word_count,
            **kwargs,
        )

    return _make


@pytest.fixture
def runtime(make_runtime):
    """In-memory runtime with default (propose) autonomy for every tenant."""
    return make_runtime()
