"""Hook contract types shared by pre-, post- and stop-phase hooks."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# Control flags added by the autonomy enforcer; never forwarded to tool handlers.
CONTROL_KEYS = frozenset({"_shadow", "_propose"})


class HookPhase(str, Enum):
    """Points in the tool-call lifecycle where hooks run."""

    PRE_TOOL_USE = "pre_tool_use"
    POST_TOOL_USE = "post_tool_use"
    STOP = "stop"


@dataclass
class HookContext:
    """
    Per-call value passed through the hook chain.

    Built fresh for every tool call. Hooks may return a modified input; the
    manager stores it back on ``tool_input`` so the next hook and the tool
    handler see it.
    """

    tenant_id: str
    user_id: str
    ai_action_id: Optional[str]
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "ai_action_id": self.ai_action_id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
        }


@dataclass
class HookResult:
    allowed: bool
    reason: Optional[str] = None
    modified_input: Optional[dict[str, Any]] = None
    hook_name: Optional[str] = None

    @classmethod
    def allow(cls, reason: Optional[str] = None, modified_input: Optional[dict] = None) -> "HookResult":
        return cls(allowed=True, reason=reason, modified_input=modified_input)

    @classmethod
    def deny(cls, reason: str) -> "HookResult":
        return cls(allowed=False, reason=reason)

    @property
    def decision(self) -> str:
        return "allow" if self.allowed else "deny"

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "modified_input": self.modified_input,
            "hook_name": self.hook_name,
        }


@dataclass
class TokenUsage:
    """Model usage attached to a post-tool event for cost tracking."""

    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float


@dataclass
class PostToolEvent:
    """Outcome of a resolved tool call (or of a disposition) for post hooks."""

    ctx: HookContext
    success: bool
    is_mutation: bool = False
    mutation_type: Optional[str] = None
    disposition: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    usage: Optional[TokenUsage] = None
    notification_type: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
