"""Action persistence with compare-and-set status transitions."""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from loguru import logger

from ..errors import ActionNotFound, InvalidStateTransition
from .models import AIAction, ActionStatus, can_transition

_MUTABLE_FIELDS = frozenset(
    {
        "output",
        "confidence",
        "reviewed_by",
        "rollback_data",
        "session_id",
        "error_message",
        "mutation_plan",
    }
)


class ActionStore(ABC):
    @abstractmethod
    async def create(self, action: AIAction) -> AIAction: ...

    @abstractmethod
    async def get(self, action_id: str) -> Optional[AIAction]: ...

    @abstractmethod
    async def update_fields(self, action_id: str, **fields: Any) -> AIAction:
        """Update non-status fields without changing status."""

    @abstractmethod
    async def transition(
        self,
        action_id: str,
        expected: Iterable[ActionStatus],
        target: ActionStatus,
        **fields: Any,
    ) -> AIAction:
        """
        Atomically move an action from one of ``expected`` to ``target``.

        Raises:
            ActionNotFound: unknown id
            InvalidStateTransition: current status not in ``expected`` or
                the edge is not in the state machine
        """

    @abstractmethod
    async def list_for_tenant(
        self, tenant_id: str, status: Optional[ActionStatus] = None
    ) -> list[AIAction]: ...


class InMemoryActionStore(ActionStore):
    """Process-local store; one lock serializes status changes."""

    def __init__(self):
        self._actions: dict[str, AIAction] = {}
        self._lock = asyncio.Lock()

    async def create(self, action: AIAction) -> AIAction:
        async with self._lock:
            if action.id in self._actions:
                raise ValueError(f"Action {action.id} already exists")
            self._actions[action.id] = copy.deepcopy(action)
        return copy.deepcopy(action)

    async def get(self, action_id: str) -> Optional[AIAction]:
        action = self._actions.get(action_id)
        return copy.deepcopy(action) if action is not None else None

    @staticmethod
    def _apply(action: AIAction, fields: dict[str, Any]) -> None:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update action fields: {sorted(unknown)}")
        for name, value in fields.items():
            setattr(action, name, copy.deepcopy(value))
        action.updated_at = datetime.now(timezone.utc)

    async def update_fields(self, action_id: str, **fields: Any) -> AIAction:
        async with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise ActionNotFound(f"AI action {action_id} not found")
            self._apply(action, fields)
            return copy.deepcopy(action)

    async def transition(
        self,
        action_id: str,
        expected: Iterable[ActionStatus],
        target: ActionStatus,
        **fields: Any,
    ) -> AIAction:
        expected = frozenset(expected)
        async with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise ActionNotFound(f"AI action {action_id} not found")
            current = action.status
            if current not in expected or not can_transition(current, target):
                raise InvalidStateTransition(
                    f"Cannot move action {action_id} from {current.value} to {target.value}",
                    details={"status": current.value, "target": target.value},
                )
            self._apply(action, fields)
            action.status = target
            logger.debug(f"Action {action_id}: {current.value} -> {target.value}")
            return copy.deepcopy(action)

    async def list_for_tenant(
        self, tenant_id: str, status: Optional[ActionStatus] = None
    ) -> list[AIAction]:
        return [
            copy.deepcopy(a)
            for a in self._actions.values()
            if a.tenant_id == tenant_id and (status is None or a.status == status)
        ]
