"""pm-db server: tenant-scoped query, get_by_id and mutate."""

from typing import Any

from ..registry.mcp import McpServer, McpTool, ToolCallContext, ToolCallResult

SERVER_NAME = "pm-db"
MUTATION_OPERATIONS = ("insert", "update", "delete")


def _row_id(tool_input: dict[str, Any]) -> Any:
    where = tool_input.get("where") or {}
    return tool_input.get("id") or where.get("id")


async def handle_query(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
    table = tool_input.get("table")
    if not table:
        return ToolCallResult(success=False, error="table is required")
    filters = {k: v for k, v in (tool_input.get("filters") or {}).items() if k != "tenant_id"}
    limit = int(tool_input.get("limit") or 50)
    rows = await ctx.db.query(ctx.tenant_id, table, filters, limit)
    return ToolCallResult(success=True, data=rows)


async def handle_get_by_id(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
    table = tool_input.get("table")
    row_id = tool_input.get("id")
    if not table or not row_id:
        return ToolCallResult(success=False, error="table and id are required")
    row = await ctx.db.get_by_id(ctx.tenant_id, table, str(row_id))
    if row is None:
        return ToolCallResult(success=False, error=f"{table} {row_id} not found")
    return ToolCallResult(success=True, data=row)


async def handle_mutate(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
    operation = tool_input.get("operation")
    table = tool_input.get("table")
    if operation not in MUTATION_OPERATIONS:
        return ToolCallResult(
            success=False, error=f"operation must be one of {', '.join(MUTATION_OPERATIONS)}"
        )
    if not table:
        return ToolCallResult(success=False, error="table is required")

    data = {k: v for k, v in (tool_input.get("data") or {}).items() if k != "tenant_id"}

    if operation == "insert":
        row = await ctx.db.insert(ctx.tenant_id, table, data, actor_id=ctx.user_id)
        return ToolCallResult(success=True, data={"operation": operation, "table": table, "row": row})

    row_id = _row_id(tool_input)
    if not row_id:
        return ToolCallResult(success=False, error=f"{operation} requires where.id")

    if operation == "update":
        row = await ctx.db.update(ctx.tenant_id, table, str(row_id), data, actor_id=ctx.user_id)
    else:
        row = await ctx.db.delete(ctx.tenant_id, table, str(row_id), actor_id=ctx.user_id)
    if row is None:
        return ToolCallResult(success=False, error=f"{table} {row_id} not found")
    return ToolCallResult(success=True, data={"operation": operation, "table": table, "row": row})


def build_pm_db_server() -> McpServer:
    return McpServer(
        name=SERVER_NAME,
        tools=[
            McpTool(
                name="query",
                description="Execute a read-only query against the PM database with tenant scoping",
                input_schema={
                    "type": "object",
                    "properties": {
                        "table": {"type": "string", "description": "Table name to query"},
                        "filters": {"type": "object", "description": "Filter conditions"},
                        "limit": {"type": "number", "description": "Max rows to return"},
                    },
                    "required": ["table"],
                },
                handler=handle_query,
            ),
            McpTool(
                name="mutate",
                description="Execute a write operation (insert/update/delete) against the PM database",
                input_schema={
                    "type": "object",
                    "properties": {
                        "operation": {"type": "string", "enum": list(MUTATION_OPERATIONS)},
                        "table": {"type": "string"},
                        "data": {"type": "object"},
                        "where": {"type": "object"},
                    },
                    "required": ["operation", "table"],
                },
                handler=handle_mutate,
                is_mutation=True,
            ),
            McpTool(
                name="get_by_id",
                description="Get a single record by ID from any table",
                input_schema={
                    "type": "object",
                    "properties": {
                        "table": {"type": "string"},
                        "id": {"type": "string"},
                    },
                    "required": ["table", "id"],
                },
                handler=handle_get_by_id,
            ),
        ],
    )
