"""
Tests for the PreToolUse hook chain and post-hook dispatch.

Covers:
- Tenant isolator: cross-tenant input is blocked, own tenant is injected
- First deny wins: no later hook runs after a deny
- A raising hook is treated as a deny
- Autonomy enforcer tags the input and never blocks
- Post hooks are scheduled without blocking and their failures are swallowed
"""

import asyncio

import pytest

from pm_agents.governance.policy import AutonomyResolver
from pm_agents.hooks import (
    AuditWriter,
    AutonomyEnforcer,
    HookContext,
    HookManager,
    HookResult,
    PostToolEvent,
    PostToolUseHook,
    PreToolUseHook,
    RateLimiter,
    TenantIsolator,
)
from pm_agents.ratelimit import FixedWindowLimiter, InMemoryRateLimitStore
from pm_agents.state import InMemoryTenantConfigStore
from tests.test_utils import read_hook_log


class SpyHook(PreToolUseHook):
    """Records every evaluation and returns a fixed result."""

    def __init__(self, name: str, result: HookResult):
        self.name = name
        self.result = result
        self.calls = 0

    async def evaluate(self, ctx: HookContext) -> HookResult:
        self.calls += 1
        return self.result


class ExplodingHook(PreToolUseHook):
    name = "exploding"

    async def evaluate(self, ctx: HookContext) -> HookResult:
        raise RuntimeError("boom")


def _ctx(tool_input=None, tenant_id="tenant-a") -> HookContext:
    return HookContext(
        tenant_id=tenant_id,
        user_id="user-1",
        ai_action_id="action-1",
        tool_name="pm-db.query",
        tool_input=dict(tool_input or {}),
    )


# ============================================================================
# TENANT ISOLATOR
# ============================================================================


@pytest.mark.asyncio
async def test_tenant_isolator_blocks_foreign_tenant():
    """Input naming another tenant is denied before anything else runs."""
    result = await TenantIsolator().evaluate(_ctx({"tenant_id": "tenant-b", "table": "tasks"}))

    assert result.allowed is False
    assert result.reason == "Cross-tenant access blocked"


@pytest.mark.asyncio
async def test_tenant_isolator_injects_caller_tenant():
    result = await TenantIsolator().evaluate(_ctx({"table": "tasks"}))

    assert result.allowed is True
    assert result.modified_input == {"table": "tasks", "tenant_id": "tenant-a"}


@pytest.mark.asyncio
async def test_tenant_isolator_accepts_matching_tenant():
    result = await TenantIsolator().evaluate(_ctx({"tenant_id": "tenant-a"}))

    assert result.allowed is True
    assert result.modified_input["tenant_id"] == "tenant-a"


# ============================================================================
# HOOK MANAGER SEQUENCING
# ============================================================================


@pytest.mark.asyncio
async def test_first_deny_wins():
    """Once a hook denies, later hooks are never evaluated."""
    first = SpyHook("first", HookResult.allow())
    denier = SpyHook("denier", HookResult.deny("nope"))
    last = SpyHook("last", HookResult.allow())
    manager = HookManager(pre_hooks=[first, denier, last])

    result = await manager.run_pre_tool_use(_ctx())

    assert result.allowed is False
    assert result.hook_name == "denier"
    assert result.reason == "nope"
    assert first.calls == 1
    assert denier.calls == 1
    assert last.calls == 0


@pytest.mark.asyncio
async def test_modified_input_flows_to_next_hook():
    seen = {}

    class Recorder(PreToolUseHook):
        name = "recorder"

        async def evaluate(self, ctx):
            seen.update(ctx.tool_input)
            return HookResult.allow()

    manager = HookManager(pre_hooks=[TenantIsolator(), Recorder()])
    result = await manager.run_pre_tool_use(_ctx({"table": "tasks"}))

    assert result.allowed is True
    assert seen == {"table": "tasks", "tenant_id": "tenant-a"}
    assert result.modified_input == {"table": "tasks", "tenant_id": "tenant-a"}


@pytest.mark.asyncio
async def test_raising_hook_is_a_deny():
    after = SpyHook("after", HookResult.allow())
    manager = HookManager(pre_hooks=[ExplodingHook(), after])

    result = await manager.run_pre_tool_use(_ctx())

    assert result.allowed is False
    assert result.hook_name == "exploding"
    assert "boom" in result.reason
    assert after.calls == 0


@pytest.mark.asyncio
async def test_every_pre_hook_invocation_is_logged(hook_log, hook_log_path):
    manager = HookManager(
        pre_hooks=[TenantIsolator(), SpyHook("denier", HookResult.deny("blocked"))],
        audit_writer=AuditWriter(hook_log),
    )

    await manager.run_pre_tool_use(_ctx())

    records = read_hook_log(hook_log_path)
    assert [r["hook_name"] for r in records] == ["tenant_isolator", "denier"]
    assert [r["decision"] for r in records] == ["allow", "deny"]
    assert all(r["event"] == "hook_decision" for r in records)
    assert all(r["tenant_id"] == "tenant-a" for r in records)
    assert records[1]["reason"] == "blocked"


# ============================================================================
# RATE LIMITER AND AUTONOMY ENFORCER
# ============================================================================


@pytest.mark.asyncio
async def test_rate_limiter_hook_denies_over_cap():
    limiter = FixedWindowLimiter(InMemoryRateLimitStore(), window_ms=60000, max_calls=2, clock=lambda: 1000)
    hook = RateLimiter(limiter)

    assert (await hook.evaluate(_ctx())).allowed
    assert (await hook.evaluate(_ctx())).allowed
    denied = await hook.evaluate(_ctx())

    assert denied.allowed is False
    assert "3/2" in denied.reason


@pytest.mark.parametrize(
    "mode, flags",
    [
        ("shadow", {"_shadow": True, "_propose": False}),
        ("propose", {"_shadow": False, "_propose": True}),
        ("execute", {"_shadow": False, "_propose": False}),
    ],
)
@pytest.mark.asyncio
async def test_autonomy_enforcer_tags_input(mode, flags):
    store = InMemoryTenantConfigStore({("tenant-a", "ai.autonomy.pm-db.query"): mode})
    hook = AutonomyEnforcer(AutonomyResolver(store))

    result = await hook.evaluate(_ctx({"table": "tasks"}))

    assert result.allowed is True
    assert result.modified_input == {"table": "tasks", **flags}
    assert mode in result.reason


# ============================================================================
# POST HOOKS
# ============================================================================


@pytest.mark.asyncio
async def test_post_hooks_do_not_block_and_failures_are_swallowed(hook_log, hook_log_path):
    release = asyncio.Event()
    finished = []

    class SlowHook(PostToolUseHook):
        name = "slow"

        async def run(self, event):
            await release.wait()
            finished.append("slow")

    class FailingHook(PostToolUseHook):
        name = "failing"

        async def run(self, event):
            raise RuntimeError("post hook broke")

    manager = HookManager(
        pre_hooks=[],
        post_hooks=[SlowHook(), FailingHook()],
        audit_writer=AuditWriter(hook_log),
    )

    tasks = manager.dispatch_post_tool_use(PostToolEvent(ctx=_ctx(), success=True))

    # Dispatch returned while the slow hook is still waiting
    assert len(tasks) == 2
    assert finished == []
    assert manager.pending >= 1

    release.set()
    await manager.drain()

    assert finished == ["slow"]
    assert manager.pending == 0
    failures = [r for r in read_hook_log(hook_log_path) if r["hook_name"] == "failing"]
    assert len(failures) == 1
    assert failures[0]["phase"] == "post_tool_use"
    assert failures[0]["decision"] == "deny"
