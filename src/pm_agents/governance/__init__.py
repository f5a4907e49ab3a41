"""Autonomy and permission governance."""

from .modes import Decision, Disposition, PermissionMode
from .permissions import PermissionDecision, PermissionInput, ToolRules, evaluate_permission
from .policy import AutonomyDecision, AutonomyResolver

__all__ = [
    "AutonomyDecision",
    "AutonomyResolver",
    "Decision",
    "Disposition",
    "PermissionDecision",
    "PermissionInput",
    "PermissionMode",
    "ToolRules",
    "evaluate_permission",
]
