"""pm-nats server: in-process event bus with tenant-stamped envelopes."""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from ..registry.mcp import McpServer, McpTool, ToolCallContext, ToolCallResult

SERVER_NAME = "pm-nats"
MAX_EVENT_LOG = 10_000


@dataclass
class EventEnvelope:
    tenant_id: str
    subject: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[EventEnvelope], None]


class EventBus:
    """
    Subject-based pub/sub.

    Subscriptions match exactly or by prefix (``pm.tasks.*``). Handler errors
    are logged and never break publication. The most recent events are kept
    in a bounded log.
    """

    def __init__(self, max_log: int = MAX_EVENT_LOG):
        self._subscriptions: dict[str, list[EventHandler]] = {}
        self._log: deque[EventEnvelope] = deque(maxlen=max_log)

    def subscribe(self, subject: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler and return a function that removes it."""
        self._subscriptions.setdefault(subject, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscriptions.get(subject, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _matches(self, pattern: str, subject: str) -> bool:
        if pattern == subject:
            return True
        if pattern.endswith(".*"):
            return subject.startswith(pattern[:-1])
        return False

    def publish(self, tenant_id: str, subject: str, payload: dict[str, Any]) -> EventEnvelope:
        envelope = EventEnvelope(
            tenant_id=tenant_id,
            subject=subject,
            payload={**payload, "tenant_id": tenant_id},
        )
        self._log.append(envelope)
        for pattern, handlers in list(self._subscriptions.items()):
            if not self._matches(pattern, subject):
                continue
            for handler in list(handlers):
                try:
                    handler(envelope)
                except Exception as e:
                    logger.error(f"Event handler for {pattern} failed on {subject}: {e}")
        return envelope

    def recent_events(self, tenant_id: str, limit: int = 50) -> list[EventEnvelope]:
        events = [e for e in self._log if e.tenant_id == tenant_id]
        return events[-limit:]


def build_pm_nats_server(bus: EventBus) -> McpServer:
    async def handle_publish(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
        subject = tool_input.get("subject")
        payload = tool_input.get("payload")
        if not subject:
            return ToolCallResult(success=False, error="subject is required")
        if not isinstance(payload, dict):
            return ToolCallResult(success=False, error="payload is required and must be an object")
        envelope = bus.publish(ctx.tenant_id, subject, payload)
        return ToolCallResult(
            success=True,
            data={"subject": subject, "tenant_id": ctx.tenant_id, "timestamp": envelope.timestamp},
        )

    async def handle_request(tool_input: dict[str, Any], ctx: ToolCallContext) -> ToolCallResult:
        subject = tool_input.get("subject")
        payload = tool_input.get("payload")
        if not subject or not isinstance(payload, dict):
            return ToolCallResult(success=False, error="subject and payload are required")

        reply_subject = f"{subject}.reply.{time.time_ns()}"
        bus.publish(ctx.tenant_id, subject, {**payload, "_reply_to": reply_subject})
        # Synchronous responders publish their reply while the request is dispatched
        for event in reversed(bus.recent_events(ctx.tenant_id, limit=MAX_EVENT_LOG)):
            if event.subject == reply_subject:
                return ToolCallResult(success=True, data=event.payload)
        return ToolCallResult(
            success=True,
            data={
                "message": "Request published. Reply will be delivered asynchronously.",
                "reply_subject": reply_subject,
            },
        )

    return McpServer(
        name=SERVER_NAME,
        tools=[
            McpTool(
                name="publish",
                description="Publish an event to a subject with automatic tenant_id injection",
                input_schema={
                    "type": "object",
                    "properties": {
                        "subject": {"type": "string", "description": "Subject, e.g. pm.tasks.status_changed"},
                        "payload": {"type": "object"},
                    },
                    "required": ["subject", "payload"],
                },
                handler=handle_publish,
                is_mutation=True,
            ),
            McpTool(
                name="request",
                description="Send a request-reply message",
                input_schema={
                    "type": "object",
                    "properties": {
                        "subject": {"type": "string"},
                        "payload": {"type": "object"},
                        "timeout_ms": {"type": "number", "default": 5000},
                    },
                    "required": ["subject", "payload"],
                },
                handler=handle_request,
            ),
        ],
    )
