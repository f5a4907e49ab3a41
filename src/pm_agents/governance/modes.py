"""Autonomy dispositions and agent permission modes."""

from enum import Enum
from typing import Optional


class Disposition(str, Enum):
    """Autonomy level governing whether AI output is applied without review."""

    SHADOW = "shadow"
    PROPOSE = "propose"
    EXECUTE = "execute"

    @classmethod
    def parse(cls, value) -> Optional["Disposition"]:
        """Parse a raw config value, returning None when it is not a valid mode."""
        if isinstance(value, dict):
            value = value.get("mode")
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PermissionMode(str, Enum):
    """Per-agent permission mode consulted by step 3 of the permission chain."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"


class Decision(str, Enum):
    """Terminal output of hooks and the permission chain."""

    ALLOW = "allow"
    DENY = "deny"
