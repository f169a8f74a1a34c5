"""
Provider-neutral completion types and the client base class.

Concrete clients (litellm, raw SSE) only translate between their wire
format and the types here; everything above this module deals in
LLMResponse, StreamChunk and ToolCall.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..tools.models import ToolDefinition


class StopReason(str, Enum):
    """Why the model stopped producing output"""
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


# OpenAI and Anthropic spellings both show up depending on the provider
_FINISH_REASONS: Dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "tool_use": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "content_filter": StopReason.CONTENT_FILTER,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}

# o1, o3, o4-mini, gpt-5...: sampling knobs are rejected by these models
_REASONING_MODEL = re.compile(r"^(o\d+|gpt-5)(-|$)", re.IGNORECASE)


@dataclass
class LLMConfig:
    """
    Settings every client understands.

    ``timeout`` bounds connecting and one-shot requests; ``stream_timeout``
    bounds the read side of a streamed completion. ``default_headers`` are
    only honoured by clients that speak HTTP themselves.
    """
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: int = 4096
    top_p: float = 1.0
    timeout: int = 60
    stream_timeout: int = 300
    track_costs: bool = True
    default_headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ToolCall:
    """
    One tool invocation proposed by the model.

    When the provider's argument text is not valid JSON it is kept as a
    string, so the registry can answer with a format error instead of the
    call disappearing.
    """
    id: str
    name: str
    arguments: Union[Dict[str, Any], str]

    @property
    def has_valid_arguments(self) -> bool:
        return isinstance(self.arguments, dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


def _calls_as_dicts(calls: Optional[List[ToolCall]]) -> Optional[List[Dict[str, Any]]]:
    return [call.to_dict() for call in calls] if calls else None


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None  # USD, when the provider or PRICING knows it

    def add(self, other: Optional["Usage"]) -> None:
        """Fold ``other`` into this record; a missing cost does not reset ours"""
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens
        if other.cost is not None:
            self.cost = other.cost if self.cost is None else self.cost + other.cost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
        }


@dataclass
class LLMResponse:
    """Result of a one-shot (non-streamed) completion"""
    content: str
    tool_calls: Optional[List[ToolCall]] = None
    stop_reason: StopReason = StopReason.END_TURN
    usage: Optional[Usage] = None
    model: Optional[str] = None
    raw_response: Optional[Any] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": _calls_as_dicts(self.tool_calls),
            "stop_reason": self.stop_reason.value,
            "usage": self.usage.to_dict() if self.usage else None,
            "model": self.model,
        }


@dataclass
class StreamChunk:
    """
    One piece of a streamed completion.

    Tool calls only appear on the final chunk, fully assembled.
    ``accumulated_content`` is filled in by BaseLLMClient.stream_completion.
    """
    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    is_final: bool = False
    stop_reason: Optional[StopReason] = None
    usage: Optional[Usage] = None
    accumulated_content: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": _calls_as_dicts(self.tool_calls),
            "is_final": self.is_final,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
        }


@dataclass
class _Fragment:
    id: str = ""
    name: str = ""
    arguments: List[str] = field(default_factory=list)

    def to_call(self) -> ToolCall:
        text = "".join(self.arguments)
        if not text:
            return ToolCall(id=self.id, name=self.name, arguments={})
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        return ToolCall(id=self.id, name=self.name, arguments=parsed if isinstance(parsed, dict) else text)


class ToolCallAccumulator:
    """
    Reassembles tool calls from OpenAI-style stream deltas.

    Deltas are grouped by ``index``. The id and name normally arrive on the
    first delta of a call, the argument JSON in arbitrary slices after it.
    """

    def __init__(self):
        self._fragments: Dict[int, _Fragment] = {}

    def add(self, index: int, call_id: Optional[str], name: Optional[str], arguments: Optional[str]) -> None:
        fragment = self._fragments.get(index)
        if fragment is None:
            fragment = self._fragments[index] = _Fragment()
        fragment.id = call_id or fragment.id
        fragment.name = name or fragment.name
        if arguments:
            fragment.arguments.append(arguments)

    def add_openai_delta(self, tc_delta: Any) -> None:
        """Accept a delta as a plain dict or as an SDK/litellm object"""
        if isinstance(tc_delta, dict):
            index, call_id = tc_delta.get("index", 0), tc_delta.get("id")
            function = tc_delta.get("function") or {}
            name, arguments = function.get("name"), function.get("arguments")
        else:
            index, call_id = getattr(tc_delta, "index", 0) or 0, getattr(tc_delta, "id", None)
            function = getattr(tc_delta, "function", None)
            name = getattr(function, "name", None)
            arguments = getattr(function, "arguments", None)
        self.add(index, call_id, name, arguments)

    def __bool__(self) -> bool:
        return bool(self._fragments)

    def build(self) -> List[ToolCall]:
        return [self._fragments[index].to_call() for index in sorted(self._fragments)]


class BaseLLMClient(ABC):
    """
    Common behaviour for completion clients.

    Subclasses implement ``_call_api`` and ``_stream_api`` against their
    transport. This class handles tool schema conversion, request overrides,
    cost estimation from ``PRICING`` and closing abandoned streams.

    ``PRICING`` maps a model name to USD per 1K tokens, e.g.
    ``{"gpt-4o": {"input": 0.005, "output": 0.015}}``. It is only consulted
    when the transport did not already report a cost.
    """

    provider: str = "unknown"
    PRICING: Dict[str, Dict[str, float]] = {}

    def __init__(self, config: Optional[LLMConfig] = None, **overrides):
        if config is None:
            config = LLMConfig(**overrides)
        else:
            for name, value in overrides.items():
                if hasattr(config, name):
                    setattr(config, name, value)
        self.config = config
        # HTTP clients that own a connection pool keep it here so close() finds it
        self._client = None

    @abstractmethod
    async def _call_api(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Perform one non-streamed completion; ``tools`` are already schemas"""

    @abstractmethod
    async def _stream_api(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> AsyncIterator[StreamChunk]:
        """Yield StreamChunks for one completion, the last with ``is_final``"""

    def _format_tool(self, tool: ToolDefinition) -> Dict[str, Any]:
        return tool.to_openai_schema()

    def _tool_schemas(
        self,
        tools: Optional[List[Union[Dict[str, Any], ToolDefinition]]],
    ) -> Optional[List[Dict[str, Any]]]:
        if not tools:
            return None
        return [self._format_tool(t) if isinstance(t, ToolDefinition) else t for t in tools]

    @staticmethod
    def _merge(kwargs: Dict[str, Any], config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = dict(kwargs)
        merged.update(config or {})
        return merged

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Union[Dict[str, Any], ToolDefinition]]] = None,
        config: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Run a single non-streamed completion.

        ``config`` holds per-request overrides (model, temperature,
        max_tokens, tool_choice, stop) and wins over ``kwargs``.
        """
        response = await self._call_api(messages, self._tool_schemas(tools), **self._merge(kwargs, config))

        usage = response.usage
        if self.config.track_costs and usage is not None and usage.cost is None:
            usage.cost = self._calculate_cost(usage, response.model)
        return response

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Union[Dict[str, Any], ToolDefinition]]] = None,
        config: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion chunk by chunk.

        Each chunk carries the text seen so far in ``accumulated_content``.
        Closing this generator early also closes the provider stream.
        """
        stream = self._stream_api(messages, self._tool_schemas(tools), **self._merge(kwargs, config))
        text = []
        try:
            async for chunk in stream:
                text.append(chunk.content)
                chunk.accumulated_content = "".join(text)
                yield chunk
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()

    @staticmethod
    def _is_restricted_model(model: Optional[str]) -> bool:
        """True for reasoning models that refuse temperature and top_p"""
        return _REASONING_MODEL.match(model or "") is not None

    def _model_params(self, model: str, **kwargs) -> Dict[str, Any]:
        limit = kwargs.get("max_tokens", self.config.max_tokens)
        if self._is_restricted_model(model):
            return {"max_completion_tokens": limit}
        return {
            "max_tokens": limit,
            "temperature": kwargs.get("temperature", self.config.temperature),
            "top_p": kwargs.get("top_p", self.config.top_p),
        }

    def _calculate_cost(self, usage: Usage, model: Optional[str] = None) -> Optional[float]:
        rates = self.PRICING.get(model or self.config.model)
        if rates is None:
            return None
        return (
            usage.prompt_tokens * rates.get("input", 0)
            + usage.completion_tokens * rates.get("output", 0)
        ) / 1000

    @staticmethod
    def _parse_stop_reason(finish_reason: Optional[str]) -> StopReason:
        """Unknown or missing finish reasons count as a normal end of turn"""
        return _FINISH_REASONS.get(finish_reason or "", StopReason.END_TURN)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        if hasattr(client, "aclose"):
            await client.aclose()
        elif hasattr(client, "close"):
            await client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
