from .gateway import (
    CANNED_OUTPUTS,
    LiteLLMModelClient,
    ModelClient,
    ModelRequest,
    ModelResponse,
    ModelToolCall,
    StubModelClient,
    build_model_client,
    decode_tool_name,
    encode_tool_name,
    tool_result_message,
)

__all__ = [
    "CANNED_OUTPUTS",
    "LiteLLMModelClient",
    "ModelClient",
    "ModelRequest",
    "ModelResponse",
    "ModelToolCall",
    "StubModelClient",
    "build_model_client",
    "decode_tool_name",
    "encode_tool_name",
    "tool_result_message",
]
