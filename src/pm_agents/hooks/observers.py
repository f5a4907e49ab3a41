"""Post-action and stop-phase hooks.

These run after a tool call (or disposition) has resolved. They are
observability and compliance side channels: the manager catches and logs
their failures so they never change the outcome of the call.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from loguru import logger

from ..accounting import CostLogStore, CostRecord
from ..audit import AuditLogStore, HookAuditLog
from ..config import Config
from ..errors import StaleWrite
from .models import HookContext, HookPhase, HookResult, PostToolEvent, TokenUsage


class PostToolUseHook(ABC):
    name: str

    @abstractmethod
    async def run(self, event: PostToolEvent) -> None:
        """Handle one resolved tool call."""


class CostTracker(PostToolUseHook):
    """Persists token usage and cost per action."""

    name = "cost_tracker"

    def __init__(self, store: CostLogStore):
        self.store = store

    async def record(self, ctx: HookContext, usage: TokenUsage) -> CostRecord:
        record = CostRecord(
            tenant_id=ctx.tenant_id,
            ai_action_id=ctx.ai_action_id,
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=usage.cost_usd,
        )
        await self.store.record(record)
        logger.debug(
            f"Recorded cost for action {ctx.ai_action_id}: {usage.model} "
            f"in={usage.input_tokens} out={usage.output_tokens} ${usage.cost_usd:.6f}"
        )
        return record

    async def run(self, event: PostToolEvent) -> None:
        if event.usage is not None:
            await self.record(event.ctx, event.usage)


class Traceability(PostToolUseHook):
    """
    Links AI-authored audit rows to the action that caused them.

    Mutations may be audited before the action id is known, so this is a
    catch-up step; running it again stamps nothing new.
    """

    name = "traceability"

    def __init__(self, audit_store: AuditLogStore):
        self.audit_store = audit_store

    async def stamp(self, ctx: HookContext) -> int:
        if not ctx.ai_action_id:
            return 0
        stamped = await self.audit_store.link_unstamped(ctx.tenant_id, ctx.ai_action_id)
        if stamped:
            logger.debug(f"Linked {stamped} audit rows to action {ctx.ai_action_id}")
        return stamped

    async def run(self, event: PostToolEvent) -> None:
        if event.success and event.is_mutation:
            await self.stamp(event.ctx)


class NotificationHook(PostToolUseHook):
    """
    Publishes in-app notifications for proposed and executed AI actions.

    Nudges are capped per (tenant, task, UTC day).
    """

    name = "notification"

    def __init__(
        self,
        publish: Callable[[str, str, dict[str, Any]], Any],
        max_nudges_per_task_per_day: int = Config.MAX_NUDGES_PER_TASK_PER_DAY,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        # publish(tenant_id, subject, payload)
        self._publish = publish
        self.max_nudges = max_nudges_per_task_per_day
        self._clock = clock
        self._nudge_counts: dict[tuple[str, str, str], int] = {}
        self._lock = asyncio.Lock()

    async def _reserve_nudge(self, tenant_id: str, task_id: str) -> bool:
        day = self._clock().date().isoformat()
        key = (tenant_id, task_id, day)
        async with self._lock:
            stale = [k for k in self._nudge_counts if k[2] != day]
            for k in stale:
                del self._nudge_counts[k]
            sent = self._nudge_counts.get(key, 0)
            if sent >= self.max_nudges:
                return False
            self._nudge_counts[key] = sent + 1
            return True

    async def notify(
        self,
        ctx: HookContext,
        mutation_type: Optional[str],
        disposition: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """Publish one notification, returning its payload or None when skipped."""
        task_id = ctx.tool_input.get("task_id") or ctx.tool_input.get("taskId")

        if notification_type == "nudge":
            if not task_id:
                logger.debug(f"Nudge for action {ctx.ai_action_id} has no task id, skipping")
                return None
            if not await self._reserve_nudge(ctx.tenant_id, task_id):
                logger.info(
                    f"Nudge limit reached for task {task_id}: "
                    f"{self.max_nudges}/{self.max_nudges} today"
                )
                return None
            kind = "ai_nudge"
            title = f"AI nudge: {ctx.tool_name}"
        elif disposition == "execute":
            kind = "ai_action_executed"
            title = f"AI executed: {ctx.tool_name}"
        elif disposition == "propose":
            kind = "ai_action_proposed"
            title = f"AI proposal: {ctx.tool_name}"
        else:
            return None

        payload = {
            "type": kind,
            "title": title,
            "user_id": ctx.tool_input.get("assignee_id") or ctx.user_id,
            "ai_action_id": ctx.ai_action_id,
            "tool_name": ctx.tool_name,
            "mutation_type": mutation_type,
            "disposition": disposition,
            "task_id": task_id,
            "message": ctx.tool_input.get("message"),
        }
        result = self._publish(ctx.tenant_id, f"pm.notifications.{kind}", payload)
        if asyncio.iscoroutine(result):
            await result
        return payload

    async def run(self, event: PostToolEvent) -> None:
        if not event.success:
            return
        if event.notification_type is None and event.disposition is None:
            return
        await self.notify(
            event.ctx,
            event.mutation_type,
            disposition=event.disposition,
            notification_type=event.notification_type,
        )


class AuditWriter(PostToolUseHook):
    """Writes one hook-decision record per hook invocation."""

    name = "audit_writer"

    def __init__(self, hook_log: HookAuditLog):
        self.hook_log = hook_log

    async def write(
        self,
        ctx: HookContext,
        hook_name: str,
        phase: HookPhase,
        result: HookResult,
    ) -> dict:
        return self.hook_log.log_hook_decision(
            tenant_id=ctx.tenant_id,
            hook_name=hook_name,
            phase=phase.value,
            decision=result.decision,
            reason=result.reason,
            ai_action_id=ctx.ai_action_id,
            tool_name=ctx.tool_name,
        )

    async def run(self, event: PostToolEvent) -> None:
        await self.write(
            event.ctx,
            "tool_result",
            HookPhase.POST_TOOL_USE,
            HookResult(allowed=event.success, reason=event.error),
        )


class SessionManagerHook:
    """
    Stop hook: persists the session turn when an action finishes.

    Unknown session rows are skipped by the service; stale turn counts are
    logged and dropped.
    """

    name = "session_manager"

    def __init__(self, session_service):
        self.session_service = session_service

    async def persist(
        self,
        ctx: HookContext,
        session_id: str,
        capability: str,
        turn_count: int,
        state: dict[str, Any],
    ) -> bool:
        try:
            updated = await self.session_service.persist_turn(
                session_id=session_id,
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                capability=capability,
                turn_count=turn_count,
                state=state,
            )
        except StaleWrite as e:
            logger.warning(f"Dropped stale session turn for {session_id}: {e}")
            return False
        return updated is not None
