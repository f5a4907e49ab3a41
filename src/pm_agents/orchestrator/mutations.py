"""Mutation plans: derive from output, apply with snapshots, roll back."""

import asyncio
from typing import Any, Optional

from loguru import logger

from ..actions.models import AIAction, MutationSource, PlannedMutation
from ..errors import StageFailure
from ..registry.capabilities import CapabilityConfig
from ..registry.mcp import ToolCallContext
from ..tooling.invocation import RATE_LIMITED, ToolGateway, ToolInvocation

PM_DB_MUTATE = "pm-db.mutate"
PM_DB_GET = "pm-db.get_by_id"
_ROW_KEYS = {"id", "tenant_id"}


def _wbs_task_mutations(output: dict[str, Any], action_input: dict[str, Any]) -> list[dict[str, Any]]:
    """One ``tasks`` insert per task in a WBS output."""
    project_id = action_input.get("project_id")
    inputs = []
    for phase_index, phase in enumerate(output.get("phases") or []):
        phase_name = phase.get("name")
        for task_index, task in enumerate(phase.get("tasks") or []):
            if isinstance(task, str):
                task = {"name": task}
            data = {
                "title": task.get("name"),
                "phase": phase_name,
                "effort": task.get("effort"),
                "priority": task.get("priority"),
                "dependencies": list(task.get("dependencies") or []),
                "position": [phase_index, task_index],
            }
            if project_id:
                data["project_id"] = project_id
            inputs.append(
                {"operation": "insert", "table": "tasks", "data": {k: v for k, v in data.items() if v is not None}}
            )
    return inputs


class MutationPlanner:
    """
    Adds output-derived mutations to an action's plan.

    Each derived mutation passes tenant isolation, the autonomy gate and the
    permission chain while being recorded. A plan is charged one rate-limit
    hit however many entries it derives.
    """

    def __init__(self, gateway: ToolGateway):
        self.gateway = gateway

    def _derive(self, config: CapabilityConfig, output: dict[str, Any], action_input: dict[str, Any]):
        derived: list[tuple[str, dict[str, Any]]] = []
        for item in output.get("mutations") or []:
            if isinstance(item, dict) and item.get("tool") and isinstance(item.get("input"), dict):
                derived.append((item["tool"], dict(item["input"])))
            else:
                logger.warning(f"Skipping malformed mutation entry in {config.capability.value} output")
        if config.plan_strategy == "wbs_tasks":
            derived.extend((PM_DB_MUTATE, tool_input) for tool_input in _wbs_task_mutations(output, action_input))
        return derived

    async def plan(
        self,
        action: AIAction,
        user_id: str,
        config: CapabilityConfig,
        output: dict[str, Any],
        db: Any = None,
    ) -> list[PlannedMutation]:
        """
        Return the action's plan with output-derived entries replaced by
        those derived from ``output``. Model tool-call entries are kept.

        Raises:
            StageFailure: ``rate_limited`` when the tenant is over its budget,
                ``tool_denied`` when a derived mutation is otherwise refused
        """
        plan = [m for m in action.mutation_plan if m.source != MutationSource.OUTPUT]
        for index, (tool_name, tool_input) in enumerate(self._derive(config, output, action.input)):
            result = await self.gateway.invoke(
                ToolInvocation(
                    tenant_id=action.tenant_id,
                    user_id=user_id,
                    ai_action_id=action.id,
                    tool_name=tool_name,
                    tool_input=tool_input,
                    config=config,
                    db=db,
                    plan=plan,
                    source=MutationSource.OUTPUT,
                    charge_rate_limit=index == 0,
                )
            )
            if not result.success:
                raise StageFailure(
                    "rate_limited" if result.error_code == RATE_LIMITED else "tool_denied",
                    f"{tool_name}: {result.error}",
                    details={"tool": tool_name, "error_code": result.error_code},
                )
        return plan


class MutationApplier:
    """
    Applies a plan one mutation at a time.

    Before each pm-db update or delete the current row is read; each applied
    mutation leaves a compensation in ``rollback_data``. A failed or
    cancelled apply replays the compensations collected so far, so no plan
    is left half applied.
    """

    def __init__(self, gateway: ToolGateway):
        self.gateway = gateway

    async def _snapshot(self, tenant_id: str, user_id: str, table: str, row_id: str, db: Any) -> Optional[dict]:
        result = await self.gateway.registry.call_tool(
            PM_DB_GET,
            {"table": table, "id": row_id},
            ToolCallContext(tenant_id=tenant_id, db=db, user_id=user_id),
        )
        return result.data if result.success else None

    @staticmethod
    def _compensation(
        mutation: PlannedMutation, before: Optional[dict[str, Any]], data: Any
    ) -> Optional[PlannedMutation]:
        if mutation.tool_name != PM_DB_MUTATE:
            return None
        tool_input = mutation.tool_input
        table = tool_input.get("table")
        operation = tool_input.get("operation")
        row = (data or {}).get("row") or {}

        if operation == "insert":
            return PlannedMutation(
                PM_DB_MUTATE, {"operation": "delete", "table": table, "where": {"id": row.get("id")}}
            )
        if before is None:
            return None
        restore = {k: v for k, v in before.items() if k not in _ROW_KEYS}
        if operation == "update":
            for key in row:
                if key not in before and key not in _ROW_KEYS:
                    restore[key] = None
            return PlannedMutation(
                PM_DB_MUTATE,
                {"operation": "update", "table": table, "where": {"id": before["id"]}, "data": restore},
            )
        if operation == "delete":
            return PlannedMutation(
                PM_DB_MUTATE,
                {"operation": "insert", "table": table, "data": {**restore, "id": before["id"]}},
            )
        return None

    async def _replay(self, action: AIAction, user_id: str, compensations: list[PlannedMutation], db: Any) -> list[str]:
        errors = []
        for compensation in reversed(compensations):
            result = await self.gateway.dispatch_authorized(
                action.tenant_id, user_id, action.id, compensation, db=db
            )
            if not result.success:
                errors.append(f"{compensation.tool_input.get('operation')}: {result.error}")
        return errors

    async def apply(self, action: AIAction, user_id: str, db: Any = None) -> dict[str, Any]:
        """
        Apply ``action.mutation_plan`` in order.

        Returns:
            rollback data: compensations in application order plus the
            tools that cannot be undone

        Raises:
            StageFailure: ``mutation_failed`` after compensating
        """
        compensations: list[PlannedMutation] = []
        irreversible: list[str] = []
        try:
            for index, mutation in enumerate(action.mutation_plan):
                before = None
                tool_input = mutation.tool_input
                if mutation.tool_name == PM_DB_MUTATE and mutation.operation in ("update", "delete"):
                    row_id = tool_input.get("id") or (tool_input.get("where") or {}).get("id")
                    if row_id:
                        before = await self._snapshot(
                            action.tenant_id, user_id, tool_input.get("table"), str(row_id), db
                        )

                result = await self.gateway.dispatch_authorized(
                    action.tenant_id, user_id, action.id, mutation, db=db
                )
                if not result.success:
                    raise StageFailure(
                        "mutation_failed",
                        f"{mutation.tool_name} #{index} failed: {result.error}",
                        details={"index": index, "tool": mutation.tool_name},
                    )

                compensation = self._compensation(mutation, before, result.data)
                if compensation is not None:
                    compensations.append(compensation)
                else:
                    irreversible.append(mutation.tool_name)
        except (Exception, asyncio.CancelledError) as e:
            if compensations:
                logger.warning(
                    f"Apply for action {action.id} stopped ({e}), compensating {len(compensations)} mutations"
                )
                errors = await self._replay(action, user_id, compensations, db)
                if errors:
                    logger.error(f"Compensation for action {action.id} incomplete: {errors}")
            if isinstance(e, (StageFailure, asyncio.CancelledError)):
                raise
            raise StageFailure("mutation_failed", str(e)) from e

        logger.info(f"Applied {len(action.mutation_plan)} mutations for action {action.id}")
        return {
            "compensations": [c.to_dict() for c in compensations],
            "irreversible": irreversible,
        }

    async def _already_absent(self, action: AIAction, user_id: str, compensation: PlannedMutation, db: Any) -> bool:
        tool_input = compensation.tool_input
        if compensation.tool_name != PM_DB_MUTATE or tool_input.get("operation") != "delete":
            return False
        row_id = (tool_input.get("where") or {}).get("id")
        if not row_id:
            return False
        before = await self._snapshot(action.tenant_id, user_id, tool_input.get("table"), str(row_id), db)
        return before is None

    async def rollback(self, action: AIAction, user_id: str, db: Any = None) -> int:
        """
        Replay the action's compensations in reverse.

        Indices listed under ``rollback_data["undone"]`` were finished by an
        earlier attempt and are skipped. A delete whose row is already gone
        counts as undone.

        Returns:
            the number of compensations in the rollback data

        Raises:
            StageFailure: ``rollback_failed`` if any compensation fails;
                ``details["undone"]`` lists every finished index so the
                caller can persist progress for a retry
        """
        data = action.rollback_data or {}
        compensations = [PlannedMutation.from_dict(c) for c in data.get("compensations", [])]
        undone = set(data.get("undone") or [])
        if data.get("irreversible"):
            logger.warning(
                f"Rollback of action {action.id} cannot undo: {', '.join(data['irreversible'])}"
            )

        errors = []
        for index in reversed(range(len(compensations))):
            if index in undone:
                continue
            compensation = compensations[index]
            result = await self.gateway.dispatch_authorized(
                action.tenant_id, user_id, action.id, compensation, db=db
            )
            if result.success:
                undone.add(index)
            elif await self._already_absent(action, user_id, compensation, db):
                logger.info(f"Rollback of action {action.id}: row for compensation #{index} already removed")
                undone.add(index)
            else:
                errors.append(f"{compensation.tool_input.get('operation')}: {result.error}")

        if errors:
            raise StageFailure(
                "rollback_failed",
                "; ".join(errors),
                details={"failed": len(errors), "total": len(compensations), "undone": sorted(undone)},
            )
        return len(compensations)
