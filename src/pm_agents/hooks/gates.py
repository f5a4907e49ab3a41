"""PreToolUse hooks: tenant isolation, rate limiting, autonomy tagging."""

from abc import ABC, abstractmethod

from loguru import logger

from ..governance.policy import DISPOSITION_FLAGS, AutonomyResolver
from ..ratelimit import FixedWindowLimiter
from .models import HookContext, HookResult


class PreToolUseHook(ABC):
    """Uniform contract for hooks that gate or rewrite a tool call."""

    name: str

    @abstractmethod
    async def evaluate(self, ctx: HookContext) -> HookResult:
        """
        Decide whether the call may proceed.

        Returns:
            HookResult; ``modified_input`` replaces ``ctx.tool_input`` for
            every later hook and the tool handler.
        """


class TenantIsolator(PreToolUseHook):
    """
    Pins every tool call to the caller's tenant.

    Must run first: later hooks and tool handlers trust the injected
    ``tenant_id``.
    """

    name = "tenant_isolator"

    async def evaluate(self, ctx: HookContext) -> HookResult:
        incoming = ctx.tool_input.get("tenant_id")
        if incoming is not None and incoming != ctx.tenant_id:
            logger.warning(
                f"Cross-tenant access blocked: tenant={ctx.tenant_id} "
                f"requested={incoming} tool={ctx.tool_name}"
            )
            return HookResult.deny("Cross-tenant access blocked")

        modified = dict(ctx.tool_input)
        modified["tenant_id"] = ctx.tenant_id
        return HookResult.allow(modified_input=modified)


class RateLimiter(PreToolUseHook):
    """Per-tenant fixed-window admission control."""

    name = "rate_limiter"

    def __init__(self, limiter: FixedWindowLimiter):
        self.limiter = limiter

    async def evaluate(self, ctx: HookContext) -> HookResult:
        allowed, state = await self.limiter.hit(ctx.tenant_id)
        if not allowed:
            reason = (
                f"Rate limit exceeded for tenant {ctx.tenant_id}: "
                f"{state.count}/{self.limiter.max_calls} calls in "
                f"{self.limiter.window_ms}ms window"
            )
            logger.warning(reason)
            return HookResult.deny(reason)
        return HookResult.allow()


class AutonomyEnforcer(PreToolUseHook):
    """
    Tags the call with the tenant's autonomy mode for the tool.

    Never blocks. The disposition travels as ``_shadow``/``_propose`` flags in
    the modified input and is consumed by the disposition stage.
    """

    name = "autonomy_enforcer"

    def __init__(self, resolver: AutonomyResolver):
        self.resolver = resolver

    async def evaluate(self, ctx: HookContext) -> HookResult:
        decision = await self.resolver.resolve(ctx.tenant_id, ctx.tool_name)
        modified = dict(ctx.tool_input)
        modified.update(DISPOSITION_FLAGS[decision.disposition])
        return HookResult.allow(reason=decision.reason, modified_input=modified)
