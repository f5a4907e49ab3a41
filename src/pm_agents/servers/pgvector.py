"""pgvector server: similarity and text search over tenant embeddings."""

from typing import Any

from ..registry.mcp import McpServer, McpTool, ToolCallContext, ToolCallResult

SERVER_NAME = "pgvector"


async def handle_search(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
    embedding = tool_input.get("query_embedding")
    if not isinstance(embedding, list) or not embedding:
        return ToolCallResult(success=False, error="query_embedding is required and must be an array")
    top_k = int(tool_input.get("top_k") or 10)
    rows = await ctx.db.vector_search(
        ctx.tenant_id, embedding, top_k=top_k, entity_type=tool_input.get("entity_type")
    )
    return ToolCallResult(success=True, data=rows)


async def handle_search_by_text(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
    text = tool_input.get("text")
    if not text:
        return ToolCallResult(success=False, error="text is required")
    limit = int(tool_input.get("limit") or 10)
    rows = await ctx.db.text_search(
        ctx.tenant_id, text, limit=limit, entity_type=tool_input.get("entity_type")
    )
    return ToolCallResult(success=True, data=rows)


def build_pgvector_server() -> McpServer:
    return McpServer(
        name=SERVER_NAME,
        tools=[
            McpTool(
                name="search",
                description="Cosine similarity search over tenant embeddings",
                input_schema={
                    "type": "object",
                    "properties": {
                        "query_embedding": {"type": "array", "items": {"type": "number"}},
                        "top_k": {"type": "number", "default": 10},
                        "entity_type": {"type": "string"},
                    },
                    "required": ["query_embedding"],
                },
                handler=handle_search,
            ),
            McpTool(
                name="search_by_text",
                description="Text relevance search over embedded entity content",
                input_schema={
                    "type": "object",
                    "properties": {
                        "text": {"type": "string"},
                        "entity_type": {"type": "string"},
                        "limit": {"type": "number", "default": 10},
                    },
                    "required": ["text"],
                },
                handler=handle_search_by_text,
            ),
        ],
    )
