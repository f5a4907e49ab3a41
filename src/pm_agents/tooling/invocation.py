"""Tool gateway: every AI-initiated tool call passes hooks and permissions here."""

from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

from ..actions.models import MutationSource, PlannedMutation
from ..audit import HookAuditLog
from ..errors import PermissionDenied, RateLimitExceeded
from ..governance.modes import Decision
from ..governance.permissions import PermissionDecision, PermissionInput, evaluate_permission
from ..hooks.manager import HookManager
from ..hooks.models import CONTROL_KEYS, HookContext, PostToolEvent
from ..registry.capabilities import CapabilityConfig
from ..registry.mcp import McpRegistry, ToolCallContext, ToolCallResult, split_qualified

PERMISSION_DENIED = "permission_denied"
RATE_LIMITED = "rate_limited"
RATE_LIMITER = "rate_limiter"


@dataclass
class ToolInvocation:
    """
    One tool call requested on behalf of an AI action.

    When ``apply`` is false a mutating call is recorded into ``plan`` instead
    of being dispatched; reads are always dispatched. With
    ``charge_rate_limit`` false the rate limiter is skipped; tenant isolation,
    autonomy and the permission chain still apply.
    """

    tenant_id: str
    user_id: str
    ai_action_id: Optional[str]
    tool_name: str
    tool_input: dict[str, Any]
    config: CapabilityConfig
    db: Any = None
    plan: Optional[list[PlannedMutation]] = None
    apply: bool = False
    source: MutationSource = MutationSource.TOOL_CALL
    charge_rate_limit: bool = True


def strip_control_keys(tool_input: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in tool_input.items() if k not in CONTROL_KEYS}


class ToolGateway:
    """
    Wraps ``McpRegistry.call_tool`` with the hook and permission chains.

    Order per call:
    1. Server visibility (the capability's allowed servers)
    2. PreToolUse hooks (tenant isolator, rate limiter, autonomy enforcer)
    3. Permission chain, logged to the hook log
    4. Deferral of mutations into the action's plan, or dispatch
    5. PostToolUse hooks, scheduled without awaiting them
    """

    def __init__(
        self,
        registry: McpRegistry,
        hook_manager: HookManager,
        hook_log: Optional[HookAuditLog] = None,
    ):
        self.registry = registry
        self.hook_manager = hook_manager
        self.hook_log = hook_log

    def _log_permission(self, inv: ToolInvocation, is_mutation: bool, decision: PermissionDecision) -> None:
        if self.hook_log is None:
            return
        try:
            self.hook_log.log_permission_decision(
                tenant_id=inv.tenant_id,
                ai_action_id=inv.ai_action_id,
                tool_name=inv.tool_name,
                decision=decision.decision.value,
                step=decision.step,
                reason=decision.reason,
                is_mutation=is_mutation,
            )
        except Exception as e:
            logger.error(f"Failed to write permission decision for {inv.tool_name}: {e}")

    def _dispatch_post(self, ctx: HookContext, result: ToolCallResult, is_mutation: bool) -> None:
        mutation_type = None
        if is_mutation:
            mutation_type = ctx.tool_input.get("operation") or ctx.tool_name
        self.hook_manager.dispatch_post_tool_use(
            PostToolEvent(
                ctx=ctx,
                success=result.success,
                is_mutation=is_mutation,
                mutation_type=mutation_type,
                data=result.data,
                error=result.error,
            )
        )

    async def invoke(self, inv: ToolInvocation) -> ToolCallResult:
        """
        Authorize and run (or defer) one tool call.

        Denials come back as failed results with ``error_code`` set so the
        agent loop can report them to the model and carry on.
        """
        tool = self.registry.get_tool(inv.tool_name)
        if tool is None:
            return ToolCallResult(success=False, error=f"Unknown tool: {inv.tool_name}")

        server_name, _ = split_qualified(inv.tool_name)
        if server_name not in inv.config.allowed_mcp_servers:
            logger.warning(
                f"{inv.config.capability.value} requested {inv.tool_name} outside its servers"
            )
            return ToolCallResult(
                success=False,
                error=f"Server {server_name} is not available to {inv.config.capability.value}",
                error_code=PERMISSION_DENIED,
            )

        ctx = HookContext(
            tenant_id=inv.tenant_id,
            user_id=inv.user_id,
            ai_action_id=inv.ai_action_id,
            tool_name=inv.tool_name,
            tool_input=dict(inv.tool_input),
        )
        skip = () if inv.charge_rate_limit else (RATE_LIMITER,)
        hook_result = await self.hook_manager.run_pre_tool_use(ctx, skip=skip)

        decision = evaluate_permission(
            PermissionInput(
                hook_decision=Decision.ALLOW if hook_result.allowed else Decision.DENY,
                agent_config_rules=inv.config.tool_rules,
                agent_permission_mode=inv.config.permission_mode,
                tool_name=inv.tool_name,
                is_mutation=tool.is_mutation,
                read_only=inv.config.read_only,
            )
        )
        self._log_permission(inv, tool.is_mutation, decision)

        if not decision.allowed:
            if not hook_result.allowed:
                reason = hook_result.reason or decision.reason
                code = RATE_LIMITED if hook_result.hook_name == RATE_LIMITER else PERMISSION_DENIED
            else:
                reason = decision.reason
                code = PERMISSION_DENIED
            logger.info(
                f"Tool call denied at {decision.step}: tenant={inv.tenant_id} "
                f"tool={inv.tool_name} reason={reason}"
            )
            result = ToolCallResult(success=False, error=reason, error_code=code)
            self._dispatch_post(ctx, result, tool.is_mutation)
            return result

        tool_input = strip_control_keys(ctx.tool_input)

        if tool.is_mutation and not inv.apply:
            if inv.plan is None:
                return ToolCallResult(
                    success=False,
                    error=f"{inv.tool_name} is a mutation and no plan is open",
                    error_code=PERMISSION_DENIED,
                )
            inv.plan.append(PlannedMutation(inv.tool_name, tool_input, inv.source))
            logger.debug(
                f"Deferred {inv.tool_name} for action {inv.ai_action_id} "
                f"(plan size {len(inv.plan)})"
            )
            return ToolCallResult(
                success=True,
                data={"deferred": True, "tool": inv.tool_name, "plan_index": len(inv.plan) - 1},
            )

        result = await self.registry.call_tool(
            inv.tool_name,
            tool_input,
            ToolCallContext(tenant_id=inv.tenant_id, db=inv.db, user_id=inv.user_id),
        )
        self._dispatch_post(ctx, result, tool.is_mutation)
        return result

    async def invoke_or_raise(self, inv: ToolInvocation) -> ToolCallResult:
        """Like ``invoke`` but surfaces denials as ``PermissionDenied``/``RateLimitExceeded``."""
        result = await self.invoke(inv)
        if result.error_code == RATE_LIMITED:
            raise RateLimitExceeded(result.error or "Rate limit exceeded")
        if result.error_code == PERMISSION_DENIED:
            raise PermissionDenied(result.error or "Permission denied", details={"tool": inv.tool_name})
        return result

    async def dispatch_authorized(
        self,
        tenant_id: str,
        user_id: str,
        ai_action_id: Optional[str],
        mutation: PlannedMutation,
        db: Any = None,
    ) -> ToolCallResult:
        """
        Run a mutation already authorized when the plan was recorded.

        Applying a plan (execute disposition or approval) does not re-run the
        PreToolUse hooks; post hooks still fire.
        """
        result = await self.registry.call_tool(
            mutation.tool_name,
            strip_control_keys(mutation.tool_input),
            ToolCallContext(tenant_id=tenant_id, db=db, user_id=user_id),
        )
        ctx = HookContext(
            tenant_id=tenant_id,
            user_id=user_id,
            ai_action_id=ai_action_id,
            tool_name=mutation.tool_name,
            tool_input=dict(mutation.tool_input),
        )
        self._dispatch_post(ctx, result, True)
        return result
