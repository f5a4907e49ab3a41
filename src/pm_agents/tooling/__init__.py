"""Hook- and permission-gated tool invocation."""

from .invocation import (
    PERMISSION_DENIED,
    RATE_LIMITED,
    ToolGateway,
    ToolInvocation,
    strip_control_keys,
)

__all__ = [
    "PERMISSION_DENIED",
    "RATE_LIMITED",
    "ToolGateway",
    "ToolInvocation",
    "strip_control_keys",
]
