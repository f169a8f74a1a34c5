"""Tests for codeact.llm.base: BaseLLMClient logic and the shared types"""

from types import SimpleNamespace

import pytest

from codeact.llm.base import (
    BaseLLMClient,
    LLMResponse,
    StopReason,
    StreamChunk,
    ToolCall,
    ToolCallAccumulator,
    Usage,
)
from codeact.tools.models import ToolDefinition


# ── Concrete subclass for testing (abstract methods stubbed) ──


class StubLLMClient(BaseLLMClient):
    provider = "stub"

    PRICING = {
        "gpt-4o": {"input": 0.005, "output": 0.015},
    }

    def __init__(self, *args, chunks=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.chunks = chunks or [StreamChunk(content="stub", is_final=True)]
        self.seen_tools = None
        self.stream_closed = False

    async def _call_api(self, messages, tools=None, **kwargs):
        return LLMResponse(content="stub", usage=Usage(prompt_tokens=1000, completion_tokens=1000), model="gpt-4o")

    async def _stream_api(self, messages, tools=None, **kwargs):
        self.seen_tools = tools
        try:
            for chunk in self.chunks:
                yield chunk
        finally:
            self.stream_closed = True


@pytest.fixture
def client():
    return StubLLMClient(model="gpt-4o")


# =========================================================================
# _is_restricted_model / _model_params
# =========================================================================


class TestModelRestrictions:

    @pytest.mark.parametrize("model", ["o1", "o1-mini", "o3", "o4-mini", "gpt-5", "GPT-5-turbo"])
    def test_restricted(self, model):
        assert BaseLLMClient._is_restricted_model(model) is True

    @pytest.mark.parametrize("model", ["gpt-4o", "gpt-4", "claude-3-opus", "", None])
    def test_not_restricted(self, model):
        assert BaseLLMClient._is_restricted_model(model) is False

    def test_restricted_model_params(self, client):
        params = client._model_params("o1")
        assert params == {"max_completion_tokens": 4096}

    def test_normal_model_params(self, client):
        params = client._model_params("gpt-4o", max_tokens=2000, temperature=0.5)
        assert params["max_tokens"] == 2000
        assert params["temperature"] == 0.5
        assert params["top_p"] == 1.0


# =========================================================================
# Cost and stop reasons
# =========================================================================


class TestCostAndStopReason:

    def test_known_model(self, client):
        usage = Usage(prompt_tokens=1000, completion_tokens=500)
        assert abs(client._calculate_cost(usage, "gpt-4o") - 0.0125) < 1e-10

    def test_unknown_model(self, client):
        assert client._calculate_cost(Usage(prompt_tokens=100), "unknown-model") is None

    @pytest.mark.asyncio
    async def test_chat_completion_adds_cost(self, client):
        response = await client.chat_completion([{"role": "user", "content": "hi"}])
        assert abs(response.usage.cost - 0.02) < 1e-10

    @pytest.mark.parametrize("finish_reason,expected", [
        (None, StopReason.END_TURN),
        ("stop", StopReason.END_TURN),
        ("length", StopReason.MAX_TOKENS),
        ("tool_calls", StopReason.TOOL_USE),
        ("function_call", StopReason.TOOL_USE),
        ("content_filter", StopReason.CONTENT_FILTER),
        ("something_new", StopReason.END_TURN),
    ])
    def test_parse_stop_reason(self, finish_reason, expected):
        assert BaseLLMClient._parse_stop_reason(finish_reason) == expected


# =========================================================================
# stream_completion
# =========================================================================


class TestStreamCompletion:

    @pytest.mark.asyncio
    async def test_accumulates_content(self):
        client = StubLLMClient(chunks=[
            StreamChunk(content="Hel"),
            StreamChunk(content="lo"),
            StreamChunk(content="", is_final=True, stop_reason=StopReason.END_TURN),
        ])
        chunks = [c async for c in client.stream_completion([{"role": "user", "content": "hi"}])]
        assert [c.accumulated_content for c in chunks] == ["Hel", "Hello", "Hello"]
        assert client.stream_closed

    @pytest.mark.asyncio
    async def test_closes_provider_stream_on_early_exit(self):
        client = StubLLMClient(chunks=[StreamChunk(content="a"), StreamChunk(content="b")])
        stream = client.stream_completion([])
        async for _ in stream:
            break
        await stream.aclose()
        assert client.stream_closed

    @pytest.mark.asyncio
    async def test_formats_tool_definitions(self):
        client = StubLLMClient()
        tool = ToolDefinition(
            name="search_web",
            description="Search the internet",
            parameters={"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
            executor=lambda args, context: None,
        )
        raw_schema = {"type": "function", "function": {"name": "raw", "parameters": {}}}
        [c async for c in client.stream_completion([], tools=[tool, raw_schema])]

        assert client.seen_tools[0]["function"]["name"] == "search_web"
        assert client.seen_tools[1] is raw_schema

    @pytest.mark.asyncio
    async def test_no_tools_means_none(self):
        client = StubLLMClient()
        [c async for c in client.stream_completion([], tools=[])]
        assert client.seen_tools is None


# =========================================================================
# ToolCallAccumulator
# =========================================================================


class TestToolCallAccumulator:

    def test_fragments_from_dicts(self):
        acc = ToolCallAccumulator()
        acc.add_openai_delta({"index": 0, "id": "call_1", "function": {"name": "run_command", "arguments": '{"comm'}})
        acc.add_openai_delta({"index": 0, "function": {"arguments": 'and": "ls"}'}})
        [tc] = acc.build()
        assert tc == ToolCall(id="call_1", name="run_command", arguments={"command": "ls"})

    def test_fragments_from_objects(self):
        acc = ToolCallAccumulator()
        acc.add_openai_delta(SimpleNamespace(
            index=1, id="b", function=SimpleNamespace(name="read_file", arguments='{"path": "x"}'),
        ))
        acc.add_openai_delta(SimpleNamespace(
            index=0, id="a", function=SimpleNamespace(name="finish", arguments=""),
        ))
        calls = acc.build()
        assert [c.id for c in calls] == ["a", "b"]
        assert calls[0].arguments == {}

    def test_invalid_json_kept_raw(self):
        acc = ToolCallAccumulator()
        acc.add(0, "c", "write_file", '{"path": ')
        [tc] = acc.build()
        assert tc.arguments == '{"path": '
        assert not tc.has_valid_arguments

    def test_empty(self):
        acc = ToolCallAccumulator()
        assert not acc
        assert acc.build() == []


class TestDataclasses:

    def test_usage_add(self):
        total = Usage()
        total.add(Usage(prompt_tokens=1, completion_tokens=2, total_tokens=3, cost=0.5))
        total.add(Usage(prompt_tokens=1, completion_tokens=1, total_tokens=2))
        total.add(None)
        assert (total.prompt_tokens, total.completion_tokens, total.total_tokens) == (2, 3, 5)
        assert total.cost == 0.5

    def test_response_to_dict(self):
        resp = LLMResponse(
            content="hi",
            tool_calls=[ToolCall(id="1", name="x", arguments={})],
            usage=Usage(total_tokens=30),
            model="gpt-4o",
        )
        d = resp.to_dict()
        assert resp.has_tool_calls
        assert d["stop_reason"] == "end_turn"
        assert d["usage"]["total_tokens"] == 30
        assert d["tool_calls"][0]["name"] == "x"
