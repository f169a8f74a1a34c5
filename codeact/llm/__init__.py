"""
CodeAct LLM - Streaming completion clients and the completion channel

Provides:
- LiteLLMClient: every provider litellm supports
- SSEStreamClient: raw OpenAI-compatible SSE over httpx
- CompletionChannel: token streaming, action parsing, retries, cancellation

Usage:
    from codeact.llm import CompletionChannel, LiteLLMClient, LLMConfig

    client = LiteLLMClient(config=LLMConfig(model="gpt-4o"), provider_name="openai")
    channel = CompletionChannel(client)
    completion = await channel.stream(messages, sink=lambda d: print(d.content, end=""))
"""

from .base import (
    BaseLLMClient,
    LLMConfig,
    LLMResponse,
    StopReason,
    StreamChunk,
    ToolCall,
    ToolCallAccumulator,
    Usage,
)
from .litellm_client import LiteLLMClient, build_litellm_model_string
from .sse_client import SSEDecoder, SSEStreamClient, decode_frames
from .channel import (
    ActionProposal,
    Completion,
    CompletionChannel,
    TokenDelta,
    extract_json_object,
    parse_action,
)
from .factory import create_llm_client

__all__ = [
    "BaseLLMClient",
    "LLMConfig",
    "LLMResponse",
    "StopReason",
    "StreamChunk",
    "ToolCall",
    "ToolCallAccumulator",
    "Usage",
    "LiteLLMClient",
    "build_litellm_model_string",
    "SSEDecoder",
    "SSEStreamClient",
    "decode_frames",
    "ActionProposal",
    "Completion",
    "CompletionChannel",
    "TokenDelta",
    "extract_json_object",
    "parse_action",
    "create_llm_client",
]
