"""MCP servers available to agents: pm-db, pgvector and pm-nats."""

from ..registry.mcp import McpRegistry
from .database import InMemoryPMDatabase, PMDatabase
from .pgvector import build_pgvector_server
from .pm_db import build_pm_db_server
from .pm_nats import EventBus, EventEnvelope, build_pm_nats_server


def build_mcp_registry(bus: EventBus) -> McpRegistry:
    """Registry with the three standard servers registered."""
    registry = McpRegistry()
    registry.register(build_pm_db_server())
    registry.register(build_pgvector_server())
    registry.register(build_pm_nats_server(bus))
    return registry


__all__ = [
    "EventBus",
    "EventEnvelope",
    "InMemoryPMDatabase",
    "PMDatabase",
    "build_mcp_registry",
    "build_pgvector_server",
    "build_pm_db_server",
    "build_pm_nats_server",
]
