"""AI orchestrator: the seven-stage pipeline behind ``execute``."""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import jsonschema
from loguru import logger

from ..accounting import estimate_cost
from ..actions.models import AIAction, ActionResult, ActionStatus, PlannedMutation
from ..actions.store import ActionStore
from ..audit import HookAuditLog
from ..config import Config
from ..errors import OrchestrationError, StageFailure, ValidationFailure
from ..governance.modes import Disposition
from ..governance.policy import AutonomyResolver
from ..hooks.models import HookContext, PostToolEvent, TokenUsage
from ..hooks.observers import SessionManagerHook
from ..llm.gateway import ModelClient, ModelRequest, tool_result_message
from ..registry.capabilities import Capability, CapabilityConfig, CapabilityRegistry
from ..servers.pm_nats import EventBus
from ..sessions.models import AISession
from ..sessions.service import SessionService
from ..state import TenantConfigStore
from ..tooling.invocation import ToolGateway, ToolInvocation
from .context import AssembledContext, ContextAssembler
from .mutations import MutationApplier, MutationPlanner

_JSON_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def parse_model_output(text: Optional[str]) -> dict[str, Any]:
    """
    Extract the JSON object from a model answer, fenced or bare.

    Raises:
        StageFailure: ``malformed_output`` when no JSON object is found
    """
    if not text or not text.strip():
        raise StageFailure("malformed_output", "model returned no output")

    candidates = [m.group(1) for m in _JSON_FENCE.finditer(text)] + [text.strip()]
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            raise StageFailure(
                "malformed_output", f"expected a JSON object, got {type(parsed).__name__}"
            )
        return parsed
    raise StageFailure("malformed_output", "output is not valid JSON")


def validate_output(output: dict[str, Any], config: CapabilityConfig) -> None:
    try:
        jsonschema.validate(output, config.output_schema)
    except jsonschema.ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise StageFailure(
            "malformed_output", f"{path}: {e.message}", details={"path": list(e.absolute_path)}
        )


def output_confidence(output: dict[str, Any]) -> float:
    """Model-reported confidence when it is a number in [0, 1], else 1.0 for a clean parse."""
    value = output.get("confidence")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0.0 <= value <= 1.0:
        return float(value)
    return 1.0


@dataclass
class AgentRun:
    """Accumulated result of the agent loop; usage survives a timeout."""

    model: str
    text: Optional[str] = None
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    denied_tools: list[str] = field(default_factory=list)


class AIOrchestrator:
    """
    Runs one capability invocation end to end.

    Stages: Trigger, Autonomy, Context, Model, Confidence, Post-processing,
    Disposition. Every status change is persisted and written to the hook
    log before ``execute`` returns or raises. Only Trigger-stage validation
    failures skip ``running``.
    """

    def __init__(
        self,
        capabilities: CapabilityRegistry,
        config_store: TenantConfigStore,
        actions: ActionStore,
        sessions: SessionService,
        gateway: ToolGateway,
        model_client: ModelClient,
        context_assembler: ContextAssembler,
        hook_log: Optional[HookAuditLog] = None,
        db: Any = None,
        events: Optional[EventBus] = None,
        timeout: float = Config.MODEL_TIMEOUT_SECONDS,
    ):
        self.capabilities = capabilities
        self.config_store = config_store
        self.autonomy = AutonomyResolver(config_store)
        self.actions = actions
        self.sessions = sessions
        self.gateway = gateway
        self.model_client = model_client
        self.context = context_assembler
        self.hook_log = hook_log
        self.db = db
        self.events = events
        self.timeout = timeout
        self.planner = MutationPlanner(gateway)
        self.applier = MutationApplier(gateway)
        self.session_hook = SessionManagerHook(sessions)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _log_transition(self, action: AIAction, from_status: Optional[ActionStatus]) -> None:
        if self.hook_log is None:
            return
        try:
            self.hook_log.log_transition(
                tenant_id=action.tenant_id,
                ai_action_id=action.id,
                from_status=from_status.value if from_status else None,
                to_status=action.status.value,
                error_message=action.error_message,
            )
        except Exception as e:
            logger.error(f"Failed to log transition for action {action.id}: {e}")

    async def transition(
        self,
        action: AIAction,
        expected: Iterable[ActionStatus],
        target: ActionStatus,
        **fields: Any,
    ) -> AIAction:
        """Persist a status change, then log it."""
        updated = await self.actions.transition(action.id, expected, target, **fields)
        self._log_transition(updated, action.status)
        return updated

    async def fail(self, action: AIAction, error_message: str, **fields: Any) -> AIAction:
        logger.warning(f"Action {action.id} ({action.capability}) failed: {error_message}")
        return await self.transition(
            action, [action.status], ActionStatus.FAILED, error_message=error_message, **fields
        )

    def emit(self, action: AIAction, kind: str, **extra: Any) -> None:
        """Publish a ``pm.ai.*`` domain event; delivery problems are logged only."""
        if self.events is None:
            return
        try:
            self.events.publish(
                action.tenant_id,
                f"pm.ai.{kind}",
                {"type": f"ai.{kind}", "ai_action_id": action.id, "capability": action.capability, **extra},
            )
        except Exception as e:
            logger.error(f"Failed to publish ai.{kind} for action {action.id}: {e}")

    def action_context(self, action: AIAction, user_id: str, tool_input: Optional[dict] = None) -> HookContext:
        return HookContext(
            tenant_id=action.tenant_id,
            user_id=user_id,
            ai_action_id=action.id,
            tool_name=f"ai.{action.capability}",
            tool_input=dict(tool_input if tool_input is not None else action.input),
        )

    def notify_outcome(self, action: AIAction, user_id: str) -> None:
        """Schedule disposition notifications, plus nudges for an applied PM-agent action."""
        if action.disposition == Disposition.SHADOW:
            return
        if action.status == ActionStatus.PROPOSED:
            disposition = Disposition.PROPOSE.value
        elif action.status == ActionStatus.EXECUTED:
            disposition = Disposition.EXECUTE.value
        else:
            return
        hooks = self.gateway.hook_manager
        hooks.dispatch_post_tool_use(
            PostToolEvent(ctx=self.action_context(action, user_id), success=True, disposition=disposition)
        )
        if action.status == ActionStatus.EXECUTED and action.capability == Capability.AI_PM_AGENT.value:
            for nudge in (action.output or {}).get("nudges", []):
                hooks.dispatch_post_tool_use(
                    PostToolEvent(
                        ctx=self.action_context(action, user_id, tool_input=nudge),
                        success=True,
                        mutation_type=nudge.get("type"),
                        notification_type="nudge",
                    )
                )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _trigger(
        self, tenant_id: str, user_id: str, capability: str, payload: Any
    ) -> tuple[Capability, CapabilityConfig]:
        cap = Capability.parse(capability)
        config = None
        if cap is not None:
            config = await self.capabilities.effective_config(cap, tenant_id, self.config_store)
        if cap is None or config is None:
            raise ValidationFailure(f"Unknown capability: {capability}")

        problem = None
        if not config.enabled:
            problem = f"Capability {cap.value} is disabled for tenant {tenant_id}"
        elif not isinstance(payload, dict):
            problem = f"Input must be an object, got {type(payload).__name__}"
        if problem is not None:
            action = AIAction(
                tenant_id=tenant_id,
                capability=cap.value,
                disposition=Disposition.PROPOSE,
                input=payload if isinstance(payload, dict) else {"value": payload},
                triggered_by=user_id,
            )
            await self.actions.create(action)
            self._log_transition(action, None)
            await self.fail(action, f"validation_failed: {problem}")
            raise ValidationFailure(problem, details={"ai_action_id": action.id})
        return cap, config

    async def _open_session(
        self, tenant_id: str, user_id: str, capability: str, session_id: Optional[str]
    ) -> Optional[AISession]:
        session = None
        if session_id:
            existing = await self.sessions.get(session_id, tenant_id)
            if existing is not None and existing.capability != capability:
                logger.info(
                    f"Session {session_id} belongs to {existing.capability}, "
                    f"starting a fresh {capability} session"
                )
            else:
                session = await self.sessions.resume(session_id, tenant_id)
                if session is None:
                    logger.info(f"Session {session_id} unavailable for {tenant_id}, starting fresh")
        if session is None:
            new_id = await self.sessions.create(tenant_id, user_id, capability)
            session = await self.sessions.get(new_id, tenant_id)
        return session

    async def _agent_loop(
        self,
        action: AIAction,
        user_id: str,
        config: CapabilityConfig,
        context: AssembledContext,
        plan: list[PlannedMutation],
        run: AgentRun,
        db: Any,
    ) -> AgentRun:
        """
        Model turns until a final answer, at most ``config.max_turns``.

        Every tool call goes through the gateway; denials are returned to the
        model as tool errors and mutations are deferred into ``plan``.
        """
        tools = self.gateway.registry.tools_for_agent(config.allowed_mcp_servers, config.read_only)
        messages: list[dict[str, Any]] = [{"role": "user", "content": context.prompt}]
        for _ in range(config.max_turns):
            response = await self.model_client.complete(
                ModelRequest(
                    capability=config.capability.value,
                    model=config.model_id,
                    system_prompt=config.system_prompt,
                    messages=list(messages),
                    tools=tools,
                    max_tokens=Config.MODEL_MAX_OUTPUT_TOKENS,
                )
            )
            run.turns += 1
            run.input_tokens += response.input_tokens
            run.output_tokens += response.output_tokens
            if not response.tool_calls:
                run.text = response.text
                return run

            messages.append(response.assistant_message())
            for call in response.tool_calls:
                result = await self.gateway.invoke(
                    ToolInvocation(
                        tenant_id=action.tenant_id,
                        user_id=user_id,
                        ai_action_id=action.id,
                        tool_name=call.name,
                        tool_input=call.arguments,
                        config=config,
                        db=db,
                        plan=plan,
                    )
                )
                if result.error_code:
                    run.denied_tools.append(call.name)
                messages.append(tool_result_message(call, result.to_dict()))

        raise StageFailure("max_turns", f"no final answer after {config.max_turns} turns")

    def _record_cost(self, action: AIAction, user_id: str, run: AgentRun) -> None:
        if run.input_tokens == 0 and run.output_tokens == 0:
            return
        usage = TokenUsage(
            model=run.model,
            input_tokens=run.input_tokens,
            output_tokens=run.output_tokens,
            cost_usd=estimate_cost(run.model, run.input_tokens, run.output_tokens),
        )
        self.gateway.hook_manager.dispatch_post_tool_use(
            PostToolEvent(ctx=self.action_context(action, user_id), success=True, usage=usage)
        )

    async def _persist_turn(
        self, action: AIAction, user_id: str, session: Optional[AISession], run: AgentRun
    ) -> None:
        if session is None or run.turns == 0:
            return
        output = None if action.disposition == Disposition.SHADOW else action.output
        try:
            await self.session_hook.persist(
                self.action_context(action, user_id),
                session.id,
                action.capability,
                session.turn_count + run.turns,
                {
                    **session.state,
                    "last_action_id": action.id,
                    "last_status": action.status.value,
                    "last_output": output,
                },
            )
        except Exception as e:
            logger.error(f"Stop hook failed for session {session.id}: {e}")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        tenant_id: str,
        user_id: str,
        capability: str,
        input: Any,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
        db: Any = None,
    ) -> ActionResult:
        """
        Run a capability for a tenant.

        Raises:
            ValidationFailure: unknown or disabled capability, non-object input

        Stage failures do not raise; they come back as a ``failed`` result
        with a categorized ``error_message``. Cancellation marks the action
        failed and propagates.
        """
        db = db if db is not None else self.db

        # Trigger
        cap, config = await self._trigger(tenant_id, user_id, capability, input)

        # Autonomy, fixed for the action's lifetime
        autonomy = await self.autonomy.resolve(tenant_id, cap.value)
        action = AIAction(
            tenant_id=tenant_id,
            capability=cap.value,
            disposition=autonomy.disposition,
            input=dict(input),
            triggered_by=user_id,
        )
        action = await self.actions.create(action)
        self._log_transition(action, None)
        logger.info(
            f"Action {action.id}: {cap.value} for tenant {tenant_id} "
            f"({autonomy.disposition.value} via {autonomy.source})"
        )
        action = await self.transition(action, [ActionStatus.PENDING], ActionStatus.RUNNING)

        run = AgentRun(model=config.model_id)
        session: Optional[AISession] = None
        try:
            session = await self._open_session(tenant_id, user_id, cap.value, session_id)
            if session is not None:
                action = await self.actions.update_fields(action.id, session_id=session.id)

            context = await self.context.assemble(
                tenant_id, config, action.input, session.state if session else None, db
            )

            plan: list[PlannedMutation] = []
            try:
                await asyncio.wait_for(
                    self._agent_loop(action, user_id, config, context, plan, run, db),
                    timeout=timeout or self.timeout,
                )
            except asyncio.TimeoutError:
                raise StageFailure(
                    "model_timeout", f"no answer within {timeout or self.timeout:g}s"
                ) from None
            except StageFailure:
                raise
            except Exception as e:
                raise StageFailure("model_error", f"{type(e).__name__}: {e}") from e

            output = parse_model_output(run.text)
            validate_output(output, config)

            # Confidence gate
            confidence = output_confidence(output)
            sufficient = confidence >= config.confidence_threshold
            if not sufficient:
                logger.info(
                    f"Action {action.id} confidence {confidence:.2f} below "
                    f"{config.confidence_threshold:.2f}, forcing review"
                )
                self.emit(action, "confidence_low", confidence=confidence)

            action.mutation_plan = plan
            plan = await self.planner.plan(action, user_id, config, output, db)
            action = await self.actions.update_fields(
                action.id, output=output, confidence=confidence, mutation_plan=plan
            )

            # Disposition
            if action.disposition == Disposition.SHADOW:
                action = await self.transition(action, [ActionStatus.RUNNING], ActionStatus.EXECUTED)
            elif action.disposition == Disposition.EXECUTE and sufficient:
                rollback_data = await self.applier.apply(action, user_id, db)
                action = await self.transition(
                    action, [ActionStatus.RUNNING], ActionStatus.EXECUTED, rollback_data=rollback_data
                )
                self.emit(action, "action_executed")
            else:
                action = await self.transition(action, [ActionStatus.RUNNING], ActionStatus.PROPOSED)
                self.emit(action, "action_proposed")

        except asyncio.CancelledError:
            await self.fail(action, "cancelled: action was cancelled")
            self._record_cost(action, user_id, run)
            raise
        except StageFailure as e:
            action = await self.fail(action, e.error_message)
        except OrchestrationError as e:
            action = await self.fail(action, f"{e.code}: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected error in action {action.id}: {e}")
            action = await self.fail(action, f"internal_error: {type(e).__name__}")

        self._record_cost(action, user_id, run)
        self.notify_outcome(action, user_id)
        await self._persist_turn(action, user_id, session, run)

        logger.info(
            f"Action {action.id} finished: status={action.status.value} "
            f"confidence={action.confidence} turns={run.turns}"
        )
        return ActionResult.from_action(action)
