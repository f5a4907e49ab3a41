"""FastMCP server exposing the AI action pipeline."""

import sys
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Optional, TypeVar

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from loguru import logger

from .config import Config
from .errors import OrchestrationError
from .redis_client import check_redis_health, close_redis_client
from .runtime import Runtime, build_runtime

SERVER_NAME = "PMAgents"
HOST = Config.HOST
PORT = Config.PORT

T = TypeVar("T")

_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Runtime built at startup; an in-memory one is built on first use otherwise."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(backend="memory")
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


async def guarded(awaitable: Awaitable[T]) -> T:
    """Await a pipeline call, converting pipeline errors to ``ToolError``."""
    try:
        return await awaitable
    except OrchestrationError as e:
        logger.info(f"Request rejected: {e.status_code} {e.code}: {e.message}")
        raise ToolError(f"{e.status_code} {e.code}: {e.message}") from e


# ============================================================================
# LIFECYCLE MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app):
    """
    Server lifecycle manager.

    Startup:
    1. Configuration validation
    2. Redis connectivity check when the Redis backend is selected
       (graceful degradation to in-memory stores)
    3. Runtime assembly and startup logging

    Shutdown:
    - Drain pending post hooks, close the Redis pool
    """
    logger.info(f"Starting {SERVER_NAME} server...")
    Config.validate()

    backend = Config.STORE_BACKEND
    if backend == "redis":
        healthy, message = await check_redis_health()
        if healthy:
            logger.info(f"Redis connected: {message}")
        else:
            logger.warning(f"{message}. Degrading to in-memory stores.")
            backend = "memory"

    runtime = build_runtime(backend=backend)
    set_runtime(runtime)

    capabilities = runtime.orchestrator.capabilities
    logger.info(
        f"Capability registry v{capabilities.version}: {len(capabilities.all())} capabilities"
    )
    logger.info(f"MCP servers: {', '.join(s.name for s in runtime.mcp_registry.all_servers())}")
    logger.info(f"Hook log: {runtime.hook_log.log_path}")
    logger.info(f"{SERVER_NAME} startup complete, listening on {HOST}:{PORT}")

    yield

    logger.info(f"{SERVER_NAME} shutting down...")
    await runtime.hook_manager.drain()
    await close_redis_client()


mcp = FastMCP(name=SERVER_NAME, lifespan=lifespan)


# ============================================================================
# TOOLS
# ============================================================================

@mcp.tool()
async def ai_execute(
    tenant_id: str,
    user_id: str,
    capability: str,
    input: dict[str, Any],
    session_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Run an AI capability for a tenant.

    Returns the action id, disposition, status, output and confidence. Stage
    failures come back with status ``failed`` and a categorized error.
    """
    runtime = get_runtime()
    result = await guarded(
        runtime.orchestrator.execute(tenant_id, user_id, capability, input, session_id=session_id)
    )
    return result.to_dict()


@mcp.tool()
async def ai_review(
    tenant_id: str,
    action_id: str,
    action: str,
    reviewer_id: str,
    edited_output: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Approve, edit or reject a proposed AI action.

    Args:
        action: approve | edit | reject
        edited_output: required for edit
    """
    runtime = get_runtime()
    result = await guarded(
        runtime.review.review(
            action_id, action, edited_output=edited_output, reviewer_id=reviewer_id, tenant_id=tenant_id
        )
    )
    return result.to_dict()


@mcp.tool()
async def ai_rollback(tenant_id: str, action_id: str, operator_id: str) -> dict[str, Any]:
    """Undo an executed AI action from its recorded rollback data."""
    runtime = get_runtime()
    result = await guarded(runtime.review.rollback(action_id, operator_id=operator_id, tenant_id=tenant_id))
    return result.to_dict()


@mcp.tool()
async def ai_get_action(tenant_id: str, action_id: str) -> dict[str, Any]:
    """Full persisted record of an AI action."""
    runtime = get_runtime()
    record = await runtime.actions.get(action_id)
    if record is None or record.tenant_id != tenant_id:
        raise ToolError(f"404 action_not_found: AI action {action_id} not found")
    return record.to_dict()


@mcp.tool()
async def ai_session_fork(tenant_id: str, user_id: str, session_id: str) -> dict[str, Any]:
    """Branch a session into a new one with a copy of its state."""
    runtime = get_runtime()
    new_id = await guarded(runtime.sessions.fork(session_id, tenant_id, user_id))
    return {"session_id": new_id, "parent_session_id": session_id}


@mcp.tool()
def ai_list_capabilities() -> list[dict[str, Any]]:
    """Static capability profiles: model tier, permission mode, turns, servers."""
    runtime = get_runtime()
    return [config.to_dict() for config in runtime.orchestrator.capabilities.all()]


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """
    Main entry point for the server.

    Configures:
    - Loguru for structured logging
    - HTTP/SSE transport
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>",
        level="INFO",
    )

    logger.add(
        Config.LOG_FILE,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        level="DEBUG",
    )

    logger.info(f"Starting {SERVER_NAME}...")

    try:
        mcp.run(transport="sse", host=HOST, port=PORT)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
