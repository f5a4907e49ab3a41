"""MCP tool registry: qualified ``server.tool`` dispatch with read-only filtering."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from loguru import logger


class ServerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


@dataclass
class ToolCallContext:
    """Handler context: tenant scope and the database collaborator."""

    tenant_id: str
    db: Any = None
    user_id: Optional[str] = None


@dataclass
class ToolCallResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    # Set when the hook or permission chain refused the call
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.error_code is not None:
            payload["error_code"] = self.error_code
        return payload


ToolHandler = Callable[[dict[str, Any], ToolCallContext], Awaitable[ToolCallResult]]


@dataclass
class McpTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    is_mutation: bool = False


@dataclass
class McpServer:
    name: str
    tools: list[McpTool]
    transport: str = "stdio"
    status: ServerStatus = ServerStatus.ACTIVE

    def get_tool(self, tool_name: str) -> Optional[McpTool]:
        for tool in self.tools:
            if tool.name == tool_name:
                return tool
        return None


@dataclass
class ToolSpec:
    """Tool as advertised to an agent."""

    qualified_name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)
    is_mutation: bool = False


def split_qualified(qualified_name: str) -> tuple[str, str]:
    """Split ``server.tool``; server names may contain dashes but not dots."""
    server, sep, tool = qualified_name.partition(".")
    if not sep or not server or not tool:
        raise ValueError(f"Tool name must be qualified as '<server>.<tool>': {qualified_name}")
    return server, tool


class McpRegistry:
    def __init__(self):
        self._servers: dict[str, McpServer] = {}

    def register(self, server: McpServer) -> None:
        self._servers[server.name] = server
        logger.debug(f"Registered MCP server {server.name} with {len(server.tools)} tools")

    def get_server(self, name: str) -> Optional[McpServer]:
        return self._servers.get(name)

    def all_servers(self) -> list[McpServer]:
        return list(self._servers.values())

    def set_status(self, name: str, status: ServerStatus) -> None:
        server = self._servers.get(name)
        if server is None:
            raise KeyError(f"Unknown MCP server: {name}")
        server.status = status

    def get_tool(self, qualified_name: str) -> Optional[McpTool]:
        try:
            server_name, tool_name = split_qualified(qualified_name)
        except ValueError:
            return None
        server = self._servers.get(server_name)
        if server is None:
            return None
        return server.get_tool(tool_name)

    def tools_for_agent(self, allowed_servers: list[str], read_only: bool) -> list[ToolSpec]:
        """
        Build the visible toolset for an agent.

        Skips unknown and inactive servers, and mutating tools when the
        agent is read-only.
        """
        specs: list[ToolSpec] = []
        for server_name in allowed_servers:
            server = self._servers.get(server_name)
            if server is None or server.status != ServerStatus.ACTIVE:
                continue
            for tool in server.tools:
                if read_only and tool.is_mutation:
                    continue
                specs.append(
                    ToolSpec(
                        qualified_name=f"{server.name}.{tool.name}",
                        description=tool.description,
                        input_schema=tool.input_schema,
                        is_mutation=tool.is_mutation,
                    )
                )
        return specs

    async def call_tool(
        self,
        qualified_name: str,
        tool_input: dict[str, Any],
        ctx: ToolCallContext,
    ) -> ToolCallResult:
        """
        Dispatch to the server handler.

        Callers on the AI path go through ``ToolGateway``, which applies the
        hook and permission chains first. Handler exceptions become failed
        results.
        """
        try:
            server_name, tool_name = split_qualified(qualified_name)
        except ValueError as e:
            return ToolCallResult(success=False, error=str(e))

        server = self._servers.get(server_name)
        if server is None:
            return ToolCallResult(success=False, error=f"Unknown MCP server: {server_name}")
        if server.status != ServerStatus.ACTIVE:
            return ToolCallResult(
                success=False, error=f"MCP server {server_name} is {server.status.value}"
            )
        tool = server.get_tool(tool_name)
        if tool is None:
            return ToolCallResult(success=False, error=f"Unknown tool: {qualified_name}")

        try:
            return await tool.handler(tool_input, ctx)
        except Exception as e:
            logger.error(f"Tool {qualified_name} failed for tenant {ctx.tenant_id}: {e}")
            return ToolCallResult(success=False, error=f"{qualified_name} failed: {e}")
