"""Hook manager: ordered PreToolUse gating and fire-and-forget post hooks."""

import asyncio
from typing import Collection, Optional, Sequence

from loguru import logger

from .gates import PreToolUseHook
from .models import HookContext, HookPhase, HookResult, PostToolEvent
from .observers import AuditWriter, PostToolUseHook


class HookManager:
    """
    Central sequencer for the hook chain.

    Pre hooks:
    - Run strictly in registration order (tenant isolator, rate limiter,
      autonomy enforcer)
    - First deny wins; no later hook runs
    - A hook that raises is treated as a deny
    - Every invocation is written to the hook log

    Post hooks:
    - Scheduled concurrently and not awaited by the tool-call path
    - Tracked until done so ``drain()`` can wait for them
    - Failures are logged and swallowed
    """

    def __init__(
        self,
        pre_hooks: Sequence[PreToolUseHook],
        post_hooks: Sequence[PostToolUseHook] = (),
        audit_writer: Optional[AuditWriter] = None,
    ):
        self._pre_hooks: list[PreToolUseHook] = list(pre_hooks)
        self._post_hooks: list[PostToolUseHook] = list(post_hooks)
        self._audit_writer = audit_writer
        self._pending: set[asyncio.Task] = set()

    @property
    def pre_hooks(self) -> list[PreToolUseHook]:
        return list(self._pre_hooks)

    @property
    def post_hooks(self) -> list[PostToolUseHook]:
        return list(self._post_hooks)

    async def _audit(self, ctx: HookContext, hook_name: str, phase: HookPhase, result: HookResult) -> None:
        if self._audit_writer is None:
            return
        try:
            await self._audit_writer.write(ctx, hook_name, phase, result)
        except Exception as e:
            logger.error(f"Audit writer failed for {hook_name}: {e}")

    async def run_pre_tool_use(self, ctx: HookContext, skip: Collection[str] = ()) -> HookResult:
        """
        Run the PreToolUse sequence against ``ctx``.

        Hooks named in ``skip`` are not evaluated and leave no log record.

        Returns:
            The denying hook's result (with ``hook_name`` set), or an allow
            result carrying the final tool input and the last reason given.
        """
        last_reason: Optional[str] = None
        for hook in self._pre_hooks:
            if hook.name in skip:
                continue
            try:
                result = await hook.evaluate(ctx)
            except Exception as e:
                logger.error(f"Hook {hook.name} failed for {ctx.tool_name}: {e}")
                result = HookResult.deny(f"Hook {hook.name} failed: {e}")
            result.hook_name = hook.name

            await self._audit(ctx, hook.name, HookPhase.PRE_TOOL_USE, result)

            if not result.allowed:
                logger.info(
                    f"PreToolUse denied by {hook.name}: tenant={ctx.tenant_id} "
                    f"tool={ctx.tool_name} reason={result.reason}"
                )
                return result

            if result.modified_input is not None:
                ctx.tool_input = result.modified_input
            if result.reason:
                last_reason = result.reason

        return HookResult(allowed=True, reason=last_reason, modified_input=ctx.tool_input)

    async def _run_post_hook(self, hook: PostToolUseHook, event: PostToolEvent) -> None:
        try:
            await hook.run(event)
        except Exception as e:
            logger.error(
                f"Post hook {hook.name} failed for action {event.ctx.ai_action_id}: {e}"
            )
            await self._audit(
                event.ctx,
                hook.name,
                HookPhase.POST_TOOL_USE,
                HookResult.deny(f"post hook failed: {e}"),
            )

    def dispatch_post_tool_use(self, event: PostToolEvent) -> list[asyncio.Task]:
        """Schedule every post hook for ``event`` and return immediately."""
        tasks = []
        for hook in self._post_hooks:
            task = asyncio.create_task(
                self._run_post_hook(hook, event), name=f"post-hook:{hook.name}"
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            tasks.append(task)
        return tasks

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled post hook to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
