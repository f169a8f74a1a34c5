"""Tests for the SSE decoder and the OpenAI-compatible SSE client"""

import json

import httpx
import pytest

from codeact.config.loader import LLMSettings
from codeact.llm.base import LLMConfig, StopReason
from codeact.llm.channel import CompletionChannel
from codeact.llm.factory import create_llm_client
from codeact.llm.litellm_client import LiteLLMClient, build_litellm_model_string
from codeact.llm.sse_client import SSEDecoder, SSEStreamClient, decode_frames


def sse_body(*events) -> bytes:
    frames = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode()


def delta(content=None, tool_calls=None, finish_reason=None):
    d = {}
    if content is not None:
        d["content"] = content
    if tool_calls is not None:
        d["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": d, "finish_reason": finish_reason}]}


def make_client(handler):
    return SSEStreamClient(
        config=LLMConfig(model="qwen2.5-coder", base_url="http://llm.test/v1", api_key="secret"),
        transport=httpx.MockTransport(handler),
    )


# =========================================================================
# SSEDecoder
# =========================================================================


class TestSSEDecoder:

    def test_frames_end_at_blank_line(self):
        decoder = SSEDecoder()
        assert decoder.feed("data: hello") is None
        assert decoder.feed("") == "hello"

    def test_multiline_data_and_comments(self):
        frames = decode_frames([
            ": keep-alive",
            "event: message",
            "data: first",
            "data:second",
            "",
            "id: 7",
            "",
        ])
        assert frames == ["first\nsecond"]

    def test_crlf_and_trailing_frame(self):
        frames = decode_frames(["data: a\r", "\r", "data: b"])
        assert frames == ["a", "b"]

    def test_value_keeps_inner_colons(self):
        assert decode_frames(["data: {\"url\": \"http://x\"}", ""]) == ['{"url": "http://x"}']


# =========================================================================
# SSEStreamClient
# =========================================================================


class TestSSEStreamClient:

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            SSEStreamClient(model="m")

    @pytest.mark.asyncio
    async def test_streams_content_and_usage(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse_body(
                delta("Hel"),
                delta("lo"),
                delta(finish_reason="stop"),
                {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
                "[DONE]",
            ), headers={"content-type": "text/event-stream"})

        client = make_client(handler)
        chunks = [c async for c in client.stream_completion([{"role": "user", "content": "hi"}])]
        await client.close()

        assert "".join(c.content for c in chunks) == "Hello"
        assert chunks[2].is_final and chunks[2].stop_reason == StopReason.END_TURN
        assert chunks[-1].usage.total_tokens == 7
        assert seen["url"] == "http://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "qwen2.5-coder"

    @pytest.mark.asyncio
    async def test_tool_calls_arrive_with_finish_reason(self):
        def handler(request):
            return httpx.Response(200, content=sse_body(
                delta("Listing files."),
                delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "run_command", "arguments": "{\"com"}}]),
                delta(tool_calls=[{"index": 0, "function": {"arguments": "mand\": \"ls\"}"}}]),
                delta(finish_reason="tool_calls"),
                "[DONE]",
            ))

        client = make_client(handler)
        chunks = [c async for c in client.stream_completion([], tools=[{"type": "function", "function": {"name": "run_command"}}])]

        assert all(c.tool_calls is None for c in chunks[:-1])
        final = chunks[-1]
        assert final.stop_reason == StopReason.TOOL_USE
        assert final.tool_calls[0].name == "run_command"
        assert final.tool_calls[0].arguments == {"command": "ls"}

    @pytest.mark.asyncio
    async def test_unterminated_last_frame_is_kept(self):
        def handler(request):
            body = sse_body(delta("Hel"), delta("lo")) + f"data: {json.dumps(delta(' world'))}\n".encode()
            return httpx.Response(200, content=body)

        chunks = [c async for c in make_client(handler).stream_completion([])]
        assert [c.content for c in chunks] == ["Hel", "lo", " world"]

    @pytest.mark.asyncio
    async def test_channel_aggregates_streamed_frames(self):
        def handler(request):
            return httpx.Response(200, content=sse_body(
                delta("Hel"), delta("lo"), delta(" world"), delta(finish_reason="stop"), "[DONE]",
            ))

        received = []
        completion = await CompletionChannel(make_client(handler)).stream(
            [{"role": "user", "content": "greet"}], sink=received.append,
        )

        assert completion.content == "Hello world"
        assert [d.content for d in received] == ["Hel", "lo", " world"]
        assert [d.index for d in received] == [0, 1, 2]
        assert completion.deltas == 3

    @pytest.mark.asyncio
    async def test_undecodable_frames_are_dropped(self):
        def handler(request):
            return httpx.Response(200, content=sse_body("not json", delta("ok", finish_reason="stop")))

        chunks = [c async for c in make_client(handler).stream_completion([])]
        assert [c.content for c in chunks] == ["ok"]

    @pytest.mark.asyncio
    async def test_error_frame_raises(self):
        def handler(request):
            return httpx.Response(200, content=sse_body(delta("par"), {"error": {"message": "overloaded"}}))

        with pytest.raises(RuntimeError, match="overloaded"):
            [c async for c in make_client(handler).stream_completion([])]

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        def handler(request):
            return httpx.Response(429, text="rate limited")

        with pytest.raises(httpx.HTTPStatusError):
            [c async for c in make_client(handler).stream_completion([])]

    @pytest.mark.asyncio
    async def test_non_streaming_call(self):
        def handler(request):
            assert "stream" not in json.loads(request.content)
            return httpx.Response(200, json={
                "model": "qwen2.5-coder",
                "choices": [{
                    "message": {
                        "content": None,
                        "tool_calls": [{"id": "c1", "function": {"name": "finish", "arguments": "{\"result\": \"ok\"}"}}],
                    },
                    "finish_reason": "tool_calls",
                }],
                "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
            })

        response = await make_client(handler).chat_completion([{"role": "user", "content": "hi"}])

        assert response.content == ""
        assert response.tool_calls[0].arguments == {"result": "ok"}
        assert response.stop_reason == StopReason.TOOL_USE
        assert response.usage.total_tokens == 7


# =========================================================================
# Factory / litellm routing
# =========================================================================


class TestClientFactory:

    @pytest.mark.parametrize("provider,model,expected", [
        ("openai", "gpt-4o", "gpt-4o"),
        ("anthropic", "claude-3-5-sonnet", "anthropic/claude-3-5-sonnet"),
        ("Ollama", "llama3", "ollama/llama3"),
        ("dashscope", "qwen-max", "openai/qwen-max"),
        ("unknown", "m", "m"),
    ])
    def test_litellm_model_string(self, provider, model, expected):
        assert build_litellm_model_string(provider, model) == expected

    def test_creates_litellm_client(self):
        client = create_llm_client(LLMSettings(provider="anthropic", model="claude-3-5-sonnet", api_key="k"))
        assert isinstance(client, LiteLLMClient)
        assert client.provider == "anthropic"

    def test_creates_sse_client(self):
        client = create_llm_client(LLMSettings(transport="sse", model="m", base_url="http://llm.test/v1"))
        assert isinstance(client, SSEStreamClient)

    def test_sse_needs_base_url(self):
        with pytest.raises(ValueError):
            create_llm_client(LLMSettings(transport="sse", model="m"))
