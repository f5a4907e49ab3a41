"""Model clients: litellm for live calls, canned outputs when no key is set."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import litellm
from loguru import logger

from ..config import Config
from ..registry.mcp import ToolSpec

TOOL_NAME_SEPARATOR = "__"


def encode_tool_name(qualified_name: str) -> str:
    """``pm-db.mutate`` -> ``pm-db__mutate`` (function names cannot hold dots)."""
    return qualified_name.replace(".", TOOL_NAME_SEPARATOR, 1)


def decode_tool_name(function_name: str) -> str:
    server, sep, tool = function_name.partition(TOOL_NAME_SEPARATOR)
    if not sep:
        return function_name
    return f"{server}.{tool}"


@dataclass
class ModelToolCall:
    id: str
    name: str  # qualified server.tool
    arguments: dict[str, Any]


@dataclass
class ModelRequest:
    capability: str
    model: str
    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[ToolSpec] = field(default_factory=list)
    max_tokens: int = Config.MODEL_MAX_OUTPUT_TOKENS


@dataclass
class ModelResponse:
    text: Optional[str]
    tool_calls: list[ModelToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    def assistant_message(self) -> dict[str, Any]:
        """This response as a chat message for the next turn."""
        message: dict[str, Any] = {"role": "assistant", "content": self.text or ""}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": encode_tool_name(call.name),
                        "arguments": json.dumps(call.arguments),
                    },
                }
                for call in self.tool_calls
            ]
        return message


def tool_result_message(call: ModelToolCall, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": call.id,
        "content": json.dumps(payload, default=str),
    }


class ModelClient(ABC):
    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Run one model turn."""


class LiteLLMModelClient(ModelClient):
    """
    Chat completions through ``litellm.acompletion``.

    Tools are offered in function-calling format with ``server__tool``
    names. Timeouts are enforced by the orchestrator around ``complete``.
    """

    def __init__(self, max_retries: int = 2):
        self.max_retries = max_retries

    @staticmethod
    def _tool_payload(tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": encode_tool_name(spec.qualified_name),
                    "description": spec.description,
                    "parameters": spec.input_schema or {"type": "object"},
                },
            }
            for spec in tools
        ]

    async def complete(self, request: ModelRequest) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": "system", "content": request.system_prompt}, *request.messages],
            "max_tokens": request.max_tokens,
            "num_retries": self.max_retries,
        }
        if request.tools:
            kwargs["tools"] = self._tool_payload(request.tools)

        response = await litellm.acompletion(**kwargs)
        message = response.choices[0].message

        tool_calls = []
        for call in getattr(message, "tool_calls", None) or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning(f"Unparseable arguments for {call.function.name}, using empty input")
                arguments = {}
            tool_calls.append(
                ModelToolCall(
                    id=call.id or str(uuid.uuid4()),
                    name=decode_tool_name(call.function.name),
                    arguments=arguments if isinstance(arguments, dict) else {},
                )
            )

        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=message.content,
            tool_calls=tool_calls,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            model=request.model,
        )


# Canned outputs used when no model is configured. Shapes follow each
# capability's output schema.
CANNED_OUTPUTS: dict[str, dict[str, Any]] = {
    "wbs_generator": {
        "phases": [
            {
                "name": "Discovery",
                "tasks": [
                    {"name": "Gather requirements", "effort": "2d", "priority": "high", "dependencies": []},
                    {"name": "Define success metrics", "effort": "1d", "priority": "medium", "dependencies": []},
                ],
            },
            {
                "name": "Delivery",
                "tasks": [
                    {
                        "name": "Build first iteration",
                        "effort": "5d",
                        "priority": "high",
                        "dependencies": ["Gather requirements"],
                    },
                ],
            },
        ],
    },
    "whats_next": {
        "items": [{"priority": "high", "task": "Unblock the oldest in-progress task", "reason": "Oldest open work"}],
    },
    "nl_query": {"answer": "No matching records were found.", "sources": []},
    "summary_writer": {
        "title": "Status summary",
        "text": "Work is progressing with no reported blockers.",
        "highlights": [],
        "blockers": [],
        "next_steps": [],
    },
    "risk_predictor": {"risks": [], "overall_risk_score": 0.1},
    "ai_pm_agent": {"nudges": [], "summary": "No overdue or stalled tasks."},
    "scope_detector": {
        "baseline_task_count": 0,
        "current_task_count": 0,
        "added_tasks": [],
        "removed_tasks": [],
        "scope_variance_percent": 0,
        "assessment": "Scope matches the baseline.",
    },
    "writing_assistant": {"text": "", "tone": "neutral", "suggestions": []},
    "sow_generator": {
        "title": "Statement of Work",
        "sections": [{"heading": "Scope", "body": "To be agreed with the client."}],
        "deliverables": [],
        "assumptions": [],
    },
    "learning_agent": {"insights": []},
}

STUB_CONFIDENCE = 0.75


class StubModelClient(ModelClient):
    """Returns a canned JSON answer in one turn, never calling tools."""

    def __init__(self, confidence: float = STUB_CONFIDENCE):
        self.confidence = confidence

    async def complete(self, request: ModelRequest) -> ModelResponse:
        payload = dict(CANNED_OUTPUTS.get(request.capability, {}))
        payload["confidence"] = self.confidence
        text = json.dumps(payload)
        prompt_chars = sum(len(str(m.get("content", ""))) for m in request.messages)
        return ModelResponse(
            text=text,
            input_tokens=(len(request.system_prompt) + prompt_chars) // 4,
            output_tokens=len(text) // 4,
            model=request.model,
        )


def build_model_client() -> ModelClient:
    if Config.ENABLE_LIVE_MODEL:
        return LiteLLMModelClient()
    logger.warning("ANTHROPIC_API_KEY not set, serving canned model outputs")
    return StubModelClient()
