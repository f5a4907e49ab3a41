"""Capability and MCP tool registries."""

from .capabilities import (
    Capability,
    CapabilityConfig,
    CapabilityRegistry,
    ModelTier,
    capability_registry,
)
from .mcp import (
    McpRegistry,
    McpServer,
    McpTool,
    ServerStatus,
    ToolCallContext,
    ToolCallResult,
    ToolSpec,
)

__all__ = [
    "Capability",
    "CapabilityConfig",
    "CapabilityRegistry",
    "McpRegistry",
    "McpServer",
    "McpTool",
    "ModelTier",
    "ServerStatus",
    "ToolCallContext",
    "ToolCallResult",
    "ToolSpec",
    "capability_registry",
]
