"""Human review of proposed actions, and operator rollback of executed ones."""

import asyncio
from enum import Enum
from typing import Any, Optional

from loguru import logger

from ..actions.models import AIAction, ActionResult, ActionStatus
from ..audit import AuditEvent
from ..errors import ActionNotFound, InvalidStateTransition, StageFailure, ValidationFailure
from ..governance.modes import Disposition
from ..registry.capabilities import Capability
from .pipeline import AIOrchestrator, validate_output


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    EDIT = "edit"
    REJECT = "reject"


class ReviewService:
    """
    Moves ``proposed`` actions forward.

    - approve: ``proposed -> approved -> executed`` applying the recorded plan
    - edit: same path, with the edited output replacing the original and
      output-derived mutations planned again from it
    - reject: ``proposed -> rejected``, nothing applied

    The first transition is a compare-and-set on ``proposed``, so a repeated
    or concurrent review fails with ``InvalidStateTransition`` instead of
    applying the plan twice.
    """

    def __init__(self, orchestrator: AIOrchestrator):
        self.orchestrator = orchestrator
        self.actions = orchestrator.actions
        # Per-action lock and the number of callers holding or awaiting it
        self._rollback_locks: dict[str, asyncio.Lock] = {}
        self._rollback_users: dict[str, int] = {}

    async def _load(self, action_id: str, tenant_id: Optional[str]) -> AIAction:
        record = await self.actions.get(action_id)
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            raise ActionNotFound(f"AI action {action_id} not found")
        return record

    def _audit(self, record: AIAction, event: AuditEvent, **fields: Any) -> None:
        hook_log = self.orchestrator.hook_log
        if hook_log is None:
            return
        try:
            hook_log.log(event, tenant_id=record.tenant_id, ai_action_id=record.id, **fields)
        except Exception as e:
            logger.error(f"Failed to write {event.value} record for action {record.id}: {e}")

    async def review(
        self,
        action_id: str,
        action: Any,
        edited_output: Optional[dict[str, Any]] = None,
        reviewer_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ActionResult:
        """
        Apply a review decision to a proposed action.

        Raises:
            ValidationFailure: unknown decision, or edit without a valid
                ``edited_output``
            ActionNotFound: unknown id or another tenant's action
            InvalidStateTransition: the action is not ``proposed``
        """
        try:
            decision = ReviewDecision(action)
        except ValueError:
            raise ValidationFailure(f"Unknown review action: {action}") from None

        record = await self._load(action_id, tenant_id)
        if record.status != ActionStatus.PROPOSED:
            raise InvalidStateTransition(
                f"Action {action_id} is {record.status.value}; only proposed actions can be reviewed",
                details={"status": record.status.value},
            )

        cap = Capability(record.capability)
        config = await self.orchestrator.capabilities.effective_config(
            cap, record.tenant_id, self.orchestrator.config_store
        )

        if decision == ReviewDecision.EDIT:
            if not isinstance(edited_output, dict):
                raise ValidationFailure("edit requires edited_output as an object")
            try:
                validate_output(edited_output, config)
            except StageFailure as e:
                raise ValidationFailure(f"edited_output rejected: {e.message}") from None

        reviewer = reviewer_id or record.triggered_by
        orch = self.orchestrator

        if decision == ReviewDecision.REJECT:
            record = await orch.transition(
                record, [ActionStatus.PROPOSED], ActionStatus.REJECTED, reviewed_by=reviewer
            )
            self._audit(record, AuditEvent.REVIEW, decision=decision.value, reviewer_id=reviewer_id)
            orch.emit(record, "action_rejected")
            logger.info(f"Action {action_id} rejected by {reviewer_id}")
            return ActionResult.from_action(record)

        fields: dict[str, Any] = {"reviewed_by": reviewer}
        if decision == ReviewDecision.EDIT:
            fields["output"] = edited_output
        record = await orch.transition(record, [ActionStatus.PROPOSED], ActionStatus.APPROVED, **fields)
        self._audit(record, AuditEvent.REVIEW, decision=decision.value, reviewer_id=reviewer_id)
        orch.emit(record, "action_approved")

        try:
            if decision == ReviewDecision.EDIT:
                plan = await orch.planner.plan(record, reviewer, config, edited_output, orch.db)
                record = await self.actions.update_fields(record.id, mutation_plan=plan)
            rollback_data = await orch.applier.apply(record, reviewer, orch.db)
        except StageFailure as e:
            record = await orch.fail(record, e.error_message)
            return ActionResult.from_action(record)
        except asyncio.CancelledError:
            await orch.fail(record, "cancelled: review was cancelled while applying")
            raise

        record = await orch.transition(
            record, [ActionStatus.APPROVED], ActionStatus.EXECUTED, rollback_data=rollback_data
        )
        orch.emit(record, "action_executed")
        orch.notify_outcome(record, reviewer)
        logger.info(
            f"Action {action_id} executed after {decision.value} by {reviewer_id}: "
            f"applied {len(record.mutation_plan)} mutations"
        )
        return ActionResult.from_action(record)

    async def rollback(
        self,
        action_id: str,
        operator_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ActionResult:
        """
        Undo an executed action by replaying its compensations in reverse.

        A failed rollback stores which compensations finished, so calling
        this again only replays the rest.

        Raises:
            ActionNotFound: unknown id or another tenant's action
            InvalidStateTransition: not ``executed``, or a shadow action
            StageFailure: ``rollback_failed``; the action stays ``executed``
        """
        lock = self._rollback_locks.setdefault(action_id, asyncio.Lock())
        self._rollback_users[action_id] = self._rollback_users.get(action_id, 0) + 1
        try:
            async with lock:
                return await self._rollback(action_id, operator_id, tenant_id)
        finally:
            self._rollback_users[action_id] -= 1
            if not self._rollback_users[action_id]:
                del self._rollback_users[action_id]
                del self._rollback_locks[action_id]

    async def _rollback(self, action_id: str, operator_id: Optional[str], tenant_id: Optional[str]) -> ActionResult:
        record = await self._load(action_id, tenant_id)
        if record.status != ActionStatus.EXECUTED:
            raise InvalidStateTransition(
                f"Action {action_id} is {record.status.value}; only executed actions can be rolled back",
                details={"status": record.status.value},
            )
        if record.disposition == Disposition.SHADOW:
            raise InvalidStateTransition(
                f"Action {action_id} ran in shadow mode; nothing was applied",
                details={"status": record.status.value, "disposition": record.disposition.value},
            )

        operator = operator_id or record.triggered_by
        orch = self.orchestrator
        try:
            undone = await orch.applier.rollback(record, operator, orch.db)
        except StageFailure as e:
            progress = {**(record.rollback_data or {}), "undone": e.details.get("undone", [])}
            await self.actions.update_fields(
                record.id, error_message=e.error_message, rollback_data=progress
            )
            self._audit(record, AuditEvent.ROLLBACK, operator_id=operator_id, error=e.error_message)
            logger.error(f"Rollback of action {action_id} failed: {e.message}")
            raise

        record = await orch.transition(record, [ActionStatus.EXECUTED], ActionStatus.ROLLED_BACK)
        self._audit(record, AuditEvent.ROLLBACK, operator_id=operator_id, compensations=undone)
        logger.info(f"Action {action_id} rolled back by {operator_id} ({undone} compensations)")
        return ActionResult.from_action(record)
