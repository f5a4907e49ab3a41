"""AI action record and its status state machine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..governance.modes import Disposition


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Every permitted status change. Trigger-stage validation failures are the
# only path that skips RUNNING.
ALLOWED_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.RUNNING, ActionStatus.FAILED}),
    ActionStatus.RUNNING: frozenset(
        {ActionStatus.PROPOSED, ActionStatus.EXECUTED, ActionStatus.FAILED}
    ),
    ActionStatus.PROPOSED: frozenset({ActionStatus.APPROVED, ActionStatus.REJECTED}),
    ActionStatus.APPROVED: frozenset({ActionStatus.EXECUTED, ActionStatus.FAILED}),
    ActionStatus.EXECUTED: frozenset({ActionStatus.ROLLED_BACK}),
    ActionStatus.REJECTED: frozenset(),
    ActionStatus.FAILED: frozenset(),
    ActionStatus.ROLLED_BACK: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: ActionStatus, target: ActionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class MutationSource(str, Enum):
    TOOL_CALL = "tool_call"  # deferred model tool call
    OUTPUT = "output"  # derived from the validated output


@dataclass
class PlannedMutation:
    """One deferred write, authorized by the hook and permission chains."""

    tool_name: str
    tool_input: dict[str, Any]
    source: MutationSource = MutationSource.TOOL_CALL

    @property
    def operation(self) -> Optional[str]:
        return self.tool_input.get("operation")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlannedMutation":
        return cls(
            tool_name=data["tool_name"],
            tool_input=dict(data.get("tool_input") or {}),
            source=MutationSource(data.get("source", MutationSource.TOOL_CALL.value)),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AIAction:
    """
    One capability invocation.

    ``disposition`` is fixed at creation. Rows are never deleted.
    """

    tenant_id: str
    capability: str
    disposition: Disposition
    input: dict[str, Any]
    triggered_by: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ActionStatus = ActionStatus.PENDING
    output: Optional[dict[str, Any]] = None
    confidence: Optional[float] = None
    reviewed_by: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None
    session_id: Optional[str] = None
    error_message: Optional[str] = None
    mutation_plan: list[PlannedMutation] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "capability": self.capability,
            "status": self.status.value,
            "disposition": self.disposition.value,
            "input": self.input,
            "output": self.output,
            "confidence": self.confidence,
            "triggered_by": self.triggered_by,
            "reviewed_by": self.reviewed_by,
            "rollback_data": self.rollback_data,
            "session_id": self.session_id,
            "error_message": self.error_message,
            "mutation_plan": [m.to_dict() for m in self.mutation_plan],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ActionResult:
    """What ``execute`` and ``review`` hand back to the caller."""

    ai_action_id: str
    capability: str
    disposition: Disposition
    status: ActionStatus
    output: Optional[dict[str, Any]]
    confidence: Optional[float]
    error_message: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_action(cls, action: AIAction) -> "ActionResult":
        # Shadow output is kept on the record for audit but never surfaced
        output = None if action.disposition == Disposition.SHADOW else action.output
        return cls(
            ai_action_id=action.id,
            capability=action.capability,
            disposition=action.disposition,
            status=action.status,
            output=output,
            confidence=action.confidence,
            error_message=action.error_message,
            session_id=action.session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ai_action_id": self.ai_action_id,
            "capability": self.capability,
            "disposition": self.disposition.value,
            "status": self.status.value,
            "output": self.output,
            "confidence": self.confidence,
            "error_message": self.error_message,
            "session_id": self.session_id,
        }
