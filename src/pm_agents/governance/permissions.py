"""Permission chain: reconcile hook verdicts, tenant rules and agent mode."""

import fnmatch
from dataclasses import dataclass, field
from typing import Any, Optional

from .modes import Decision, PermissionMode


@dataclass
class ToolRules:
    """
    Tenant-specific per-tool overrides for one agent.

    Patterns use fnmatch syntax against qualified tool names
    (``pm-db.mutate``, ``pgvector.*``). Deny patterns are checked first.
    """

    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["ToolRules"]:
        if not data:
            return None
        return cls(allow=list(data.get("allow", [])), deny=list(data.get("deny", [])))

    def match(self, tool_name: str) -> Optional[Decision]:
        """Return the verdict of the first matching rule, or None."""
        if any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in self.deny):
            return Decision.DENY
        if any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in self.allow):
            return Decision.ALLOW
        return None


@dataclass
class PermissionInput:
    hook_decision: Decision
    agent_config_rules: Optional[ToolRules]
    agent_permission_mode: PermissionMode
    tool_name: str
    is_mutation: bool
    # Read-only capabilities: a mutation is vetoed before rules or mode apply.
    read_only: bool = False


@dataclass
class PermissionDecision:
    """Outcome of the chain plus the step that produced it, for the hook log."""

    decision: Decision
    step: str
    reason: str

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


def evaluate_permission(inp: PermissionInput) -> PermissionDecision:
    """
    Evaluate the 4-step permission chain. Pure; no I/O.

    1. Hook deny is an authoritative veto
    2. Tenant rules matching the tool decide; no match falls through
    3. Permission mode: bypassPermissions allows everything, acceptEdits
       allows mutations, default denies mutations
    4. Fallback: mutations denied, reads allowed

    Nothing mutates without a hook pass plus an affirmative rule or a
    permissive mode.
    """
    if inp.hook_decision == Decision.DENY:
        return PermissionDecision(Decision.DENY, "hook", "Denied by PreToolUse hook")

    if inp.read_only and inp.is_mutation:
        return PermissionDecision(
            Decision.DENY, "read_only", f"Read-only agent cannot call mutating tool {inp.tool_name}"
        )

    if inp.agent_config_rules is not None:
        verdict = inp.agent_config_rules.match(inp.tool_name)
        if verdict is not None:
            return PermissionDecision(
                verdict, "agent_config", f"Tenant agent rule {verdict.value}s {inp.tool_name}"
            )

    mode = inp.agent_permission_mode
    if mode == PermissionMode.BYPASS_PERMISSIONS:
        return PermissionDecision(Decision.ALLOW, "permission_mode", "bypassPermissions allows all tools")
    if mode == PermissionMode.ACCEPT_EDITS and inp.is_mutation:
        return PermissionDecision(Decision.ALLOW, "permission_mode", "acceptEdits allows mutations")
    if mode == PermissionMode.DEFAULT and inp.is_mutation:
        return PermissionDecision(
            Decision.DENY, "permission_mode", "default mode requires an explicit grant to mutate"
        )

    if inp.is_mutation:
        return PermissionDecision(Decision.DENY, "fallback", "Mutations require an explicit grant")
    return PermissionDecision(Decision.ALLOW, "fallback", "Read operations are allowed by default")
