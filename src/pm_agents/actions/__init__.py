"""AI action records and persistence."""

from .models import (
    ALLOWED_TRANSITIONS,
    AIAction,
    ActionResult,
    ActionStatus,
    MutationSource,
    PlannedMutation,
    TERMINAL_STATUSES,
    can_transition,
)
from .store import ActionStore, InMemoryActionStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AIAction",
    "ActionResult",
    "ActionStatus",
    "ActionStore",
    "InMemoryActionStore",
    "MutationSource",
    "PlannedMutation",
    "TERMINAL_STATUSES",
    "can_transition",
]
