"""Tests for model clients and model output handling."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from pm_agents.config import Config
from pm_agents.errors import StageFailure
from pm_agents.llm import (
    CANNED_OUTPUTS,
    LiteLLMModelClient,
    ModelRequest,
    ModelResponse,
    ModelToolCall,
    StubModelClient,
    build_model_client,
    decode_tool_name,
    encode_tool_name,
    tool_result_message,
)
from pm_agents.orchestrator import output_confidence, parse_model_output, validate_output
from pm_agents.registry.capabilities import capability_registry
from pm_agents.registry.mcp import ToolSpec


def _request(**overrides) -> ModelRequest:
    fields = {
        "capability": "nl_query",
        "model": "anthropic/claude-sonnet-4-20250514",
        "system_prompt": "Answer questions.",
        "messages": [{"role": "user", "content": "How many tasks?"}],
    }
    fields.update(overrides)
    return ModelRequest(**fields)


# ============================================================================
# TOOL NAMES AND MESSAGES
# ============================================================================


@pytest.mark.parametrize(
    "qualified, encoded",
    [
        ("pm-db.mutate", "pm-db__mutate"),
        ("pgvector.search_by_text", "pgvector__search_by_text"),
        ("pm-nats.publish", "pm-nats__publish"),
    ],
)
def test_tool_name_encoding(qualified, encoded):
    assert encode_tool_name(qualified) == encoded
    assert decode_tool_name(encoded) == qualified


def test_decode_leaves_plain_names():
    assert decode_tool_name("pm-db.query") == "pm-db.query"


def test_assistant_message_carries_encoded_tool_calls():
    response = ModelResponse(
        text=None,
        tool_calls=[ModelToolCall(id="c1", name="pm-db.query", arguments={"table": "tasks"})],
    )

    message = response.assistant_message()

    assert message["role"] == "assistant"
    assert message["content"] == ""
    [call] = message["tool_calls"]
    assert call["function"]["name"] == "pm-db__query"
    assert json.loads(call["function"]["arguments"]) == {"table": "tasks"}


def test_tool_result_message():
    call = ModelToolCall(id="c1", name="pm-db.query", arguments={})

    message = tool_result_message(call, {"success": True, "data": []})

    assert message["role"] == "tool"
    assert message["tool_call_id"] == "c1"
    assert json.loads(message["content"]) == {"success": True, "data": []}


# ============================================================================
# OUTPUT PARSING
# ============================================================================


@pytest.mark.parametrize(
    "text",
    [
        '{"answer": "42"}',
        '```json\n{"answer": "42"}\n```',
        'Here you go:\n```\n{"answer": "42"}\n```\nAnything else?',
        '  {"answer": "42"}  \n',
    ],
)
def test_parse_model_output(text):
    assert parse_model_output(text) == {"answer": "42"}


@pytest.mark.parametrize("text", [None, "", "   ", "not json", "[1, 2]", "```json\n[1]\n```"])
def test_parse_model_output_rejects(text):
    with pytest.raises(StageFailure) as exc_info:
        parse_model_output(text)

    assert exc_info.value.category == "malformed_output"


@pytest.mark.parametrize(
    "output, expected",
    [
        ({"confidence": 0.42}, 0.42),
        ({"confidence": 1}, 1.0),
        ({"confidence": 0}, 0.0),
        ({}, 1.0),
        ({"confidence": 1.5}, 1.0),
        ({"confidence": -0.1}, 1.0),
        ({"confidence": "high"}, 1.0),
        ({"confidence": True}, 1.0),
    ],
)
def test_output_confidence(output, expected):
    assert output_confidence(output) == expected


@pytest.mark.parametrize("config", capability_registry.all(), ids=lambda c: c.capability.value)
def test_canned_output_matches_capability_schema(config):
    output = {**CANNED_OUTPUTS[config.capability.value], "confidence": 0.75}

    validate_output(output, config)


def test_validate_output_reports_path():
    config = capability_registry.get("wbs_generator")

    with pytest.raises(StageFailure) as exc_info:
        validate_output({"phases": [{"name": "Only"}]}, config)

    assert exc_info.value.category == "malformed_output"
    assert exc_info.value.message.startswith("phases/0:")


# ============================================================================
# CLIENTS
# ============================================================================


@pytest.mark.asyncio
async def test_stub_client_returns_canned_output():
    response = await StubModelClient().complete(_request(capability="wbs_generator"))

    payload = json.loads(response.text)
    assert payload["phases"] == CANNED_OUTPUTS["wbs_generator"]["phases"]
    assert payload["confidence"] == 0.75
    assert response.tool_calls == []
    assert response.model == "anthropic/claude-sonnet-4-20250514"
    assert response.input_tokens > 0


@pytest.mark.asyncio
async def test_litellm_client_maps_request_and_response():
    litellm_response = SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(
                    content=None,
                    tool_calls=[
                        SimpleNamespace(
                            id="c1",
                            function=SimpleNamespace(name="pm-db__query", arguments='{"table": "tasks"}'),
                        ),
                        SimpleNamespace(
                            id="c2",
                            function=SimpleNamespace(name="pgvector__search_by_text", arguments="{not json"),
                        ),
                    ],
                )
            )
        ],
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
    )
    tools = [ToolSpec("pm-db.query", "Query rows", {"type": "object"})]

    with patch("pm_agents.llm.gateway.litellm.acompletion", new=AsyncMock(return_value=litellm_response)) as call:
        response = await LiteLLMModelClient(max_retries=1).complete(_request(tools=tools))

    kwargs = call.await_args.kwargs
    assert kwargs["model"] == "anthropic/claude-sonnet-4-20250514"
    assert kwargs["messages"][0] == {"role": "system", "content": "Answer questions."}
    assert kwargs["messages"][1]["content"] == "How many tasks?"
    assert kwargs["num_retries"] == 1
    assert kwargs["tools"][0]["function"]["name"] == "pm-db__query"

    assert [c.name for c in response.tool_calls] == ["pm-db.query", "pgvector.search_by_text"]
    assert response.tool_calls[0].arguments == {"table": "tasks"}
    # Unparseable arguments degrade to an empty input
    assert response.tool_calls[1].arguments == {}
    assert (response.input_tokens, response.output_tokens) == (120, 30)


@pytest.mark.asyncio
async def test_litellm_client_without_tools_or_usage():
    litellm_response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content='{"answer": "none"}', tool_calls=None))],
        usage=None,
    )

    with patch("pm_agents.llm.gateway.litellm.acompletion", new=AsyncMock(return_value=litellm_response)) as call:
        response = await LiteLLMModelClient().complete(_request())

    assert "tools" not in call.await_args.kwargs
    assert response.text == '{"answer": "none"}'
    assert response.tool_calls == []
    assert response.input_tokens == 0


def test_build_model_client(monkeypatch):
    monkeypatch.setattr(Config, "ENABLE_LIVE_MODEL", False)
    assert isinstance(build_model_client(), StubModelClient)

    monkeypatch.setattr(Config, "ENABLE_LIVE_MODEL", True)
    assert isinstance(build_model_client(), LiteLLMModelClient)
