"""Hook chain for AI-initiated tool calls."""

from .gates import AutonomyEnforcer, PreToolUseHook, RateLimiter, TenantIsolator
from .manager import HookManager
from .models import (
    CONTROL_KEYS,
    HookContext,
    HookPhase,
    HookResult,
    PostToolEvent,
    TokenUsage,
)
from .observers import (
    AuditWriter,
    CostTracker,
    NotificationHook,
    PostToolUseHook,
    SessionManagerHook,
    Traceability,
)

__all__ = [
    "AuditWriter",
    "AutonomyEnforcer",
    "CONTROL_KEYS",
    "CostTracker",
    "HookContext",
    "HookManager",
    "HookPhase",
    "HookResult",
    "NotificationHook",
    "PostToolEvent",
    "PostToolUseHook",
    "PreToolUseHook",
    "RateLimiter",
    "SessionManagerHook",
    "TenantIsolator",
    "TokenUsage",
    "Traceability",
]
