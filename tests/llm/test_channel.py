"""Tests for CompletionChannel: streaming, action parsing, retries, cancellation"""

import asyncio

import pytest

from codeact.cancellation import CancelToken
from codeact.errors import CancellationRequested, CompletionError, CompletionFormatError, CompletionTimeout
from codeact.llm.base import BaseLLMClient, LLMConfig, LLMResponse, StopReason, StreamChunk, ToolCall, Usage
from codeact.llm.channel import (
    CompletionChannel,
    Completion,
    _FormatProblem,
    extract_json_object,
    parse_action,
)


class QueueClient(BaseLLMClient):
    """Each streaming call plays the next list of chunks (or raises / hangs)"""

    provider = "queue"

    def __init__(self, *scripts):
        super().__init__(LLMConfig(model="queue"))
        self.scripts = list(scripts)
        self.calls = 0
        self.started = asyncio.Event()
        self.aborted = False

    async def _call_api(self, messages, tools=None, **kwargs):
        return LLMResponse(content="")

    async def _stream_api(self, messages, tools=None, **kwargs):
        self.calls += 1
        script = self.scripts.pop(0) if self.scripts else []
        if isinstance(script, Exception):
            raise script
        try:
            if script == "hang":
                self.started.set()
                await asyncio.Event().wait()
            for chunk in script:
                yield chunk
        except asyncio.CancelledError:
            self.aborted = True
            raise


def text(*parts, tool_calls=None, usage=None):
    chunks = [StreamChunk(content=p) for p in parts]
    chunks.append(StreamChunk(
        tool_calls=tool_calls,
        is_final=True,
        stop_reason=StopReason.TOOL_USE if tool_calls else StopReason.END_TURN,
        usage=usage,
    ))
    return chunks


def call(name, **arguments):
    return [ToolCall(id="c1", name=name, arguments=arguments)]


# =========================================================================
# Parsing helpers
# =========================================================================


class TestParseAction:

    def test_native_tool_call(self):
        proposal = parse_action(Completion(content=" Listing files. ", tool_calls=call("run_command", command="ls")))
        assert proposal.thought == "Listing files."
        assert proposal.tool_call.name == "run_command"
        assert not proposal.wants_finish

    def test_no_tool_call_means_finish(self):
        proposal = parse_action(Completion(content="All done."))
        assert proposal.tool_call is None
        assert proposal.wants_finish

    def test_fenced_action_block(self):
        content = 'I will write the file.\n```json\n{"tool": "write_file", "arguments": {"path": "a.py", "content": "x"}}\n```'
        proposal = parse_action(Completion(content=content))
        assert proposal.thought == "I will write the file."
        assert proposal.tool_call.name == "write_file"
        assert proposal.tool_call.arguments == {"path": "a.py", "content": "x"}
        assert proposal.tool_call.id

    def test_fenced_block_accepts_name_key(self):
        proposal = parse_action(Completion(content='```json\n{"name": "finish"}\n```'))
        assert proposal.tool_call.name == "finish"
        assert proposal.tool_call.arguments == {}

    def test_missing_call_id_is_filled(self):
        completion = Completion(content="", tool_calls=[ToolCall(id="", name="finish", arguments={})])
        assert parse_action(completion).tool_call.id

    @pytest.mark.parametrize("completion", [
        Completion(content="", tool_calls=call("a") + call("b")),
        Completion(content="", tool_calls=[ToolCall(id="1", name="", arguments={})]),
        Completion(content="", tool_calls=[ToolCall(id="1", name="x", arguments='{"broken"')]),
        Completion(content='```json\n{"tool": "a"}\n```\n```json\n{"tool": "b"}\n```'),
        Completion(content='```json\n{"tool": \n```'),
        Completion(content='```json\n["run_command"]\n```'),
        Completion(content='```json\n{"arguments": {}}\n```'),
        Completion(content='```json\n{"tool": "x", "arguments": "ls"}\n```'),
    ])
    def test_format_problems(self, completion):
        with pytest.raises(_FormatProblem):
            parse_action(completion)


class TestExtractJsonObject:

    def test_bare(self):
        assert extract_json_object('{"tasks": ["a"]}') == {"tasks": ["a"]}

    def test_fenced(self):
        assert extract_json_object('Plan:\n```json\n{"tasks": []}\n```') == {"tasks": []}

    def test_embedded(self):
        assert extract_json_object('Sure! {"decision": "stop"} Hope that helps.') == {"decision": "stop"}

    @pytest.mark.parametrize("raw", ["", "no json here", "[1, 2]", "{broken"])
    def test_nothing_usable(self, raw):
        assert extract_json_object(raw) is None


# =========================================================================
# CompletionChannel
# =========================================================================


class TestStream:

    def test_client_required(self):
        with pytest.raises(ValueError):
            CompletionChannel(None)

    @pytest.mark.asyncio
    async def test_deltas_reach_sink_in_order(self):
        deltas = []
        client = QueueClient(text("Hel", "", "lo", usage=Usage(total_tokens=9)))
        completion = await CompletionChannel(client).stream([], sink=deltas.append)

        assert completion.content == "Hello"
        assert [(d.index, d.content) for d in deltas] == [(0, "Hel"), (1, "lo")]
        assert completion.deltas == 2
        assert completion.usage.total_tokens == 9
        assert completion.stop_reason == StopReason.END_TURN

    @pytest.mark.asyncio
    async def test_async_sink(self):
        received = []

        async def sink(delta):
            received.append(delta.content)

        await CompletionChannel(QueueClient(text("a", "b"))).stream([], sink=sink)
        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_provider_failure_is_completion_error(self):
        channel = CompletionChannel(QueueClient(ConnectionError("reset")))
        with pytest.raises(CompletionError, match="reset"):
            await channel.stream([])

    @pytest.mark.asyncio
    async def test_timeout_aborts_stream(self):
        client = QueueClient("hang")
        channel = CompletionChannel(client, stream_timeout=0.05)
        with pytest.raises(CompletionTimeout):
            await channel.stream([])
        assert client.aborted

    @pytest.mark.asyncio
    async def test_cancellation_aborts_stream(self):
        client = QueueClient("hang")
        token = CancelToken()
        channel = CompletionChannel(client)

        task = asyncio.create_task(channel.stream([], cancel=token))
        await asyncio.wait_for(client.started.wait(), timeout=5)
        token.cancel("stop")

        with pytest.raises(CancellationRequested):
            await asyncio.wait_for(task, timeout=5)
        assert client.aborted


class TestRequestAction:

    @pytest.mark.asyncio
    async def test_first_attempt(self):
        client = QueueClient(text("Run it.", tool_calls=call("run_command", command="ls")))
        proposal = await CompletionChannel(client, retry_delay=0).request_action([])
        assert proposal.attempts == 1
        assert proposal.tool_call.arguments == {"command": "ls"}

    @pytest.mark.asyncio
    async def test_retries_malformed_output(self):
        client = QueueClient(
            text("x", tool_calls=call("a") + call("b")),
            text("y", tool_calls=call("finish", result="ok")),
        )
        proposal = await CompletionChannel(client, retry_delay=0).request_action([])
        assert proposal.attempts == 2
        assert proposal.tool_call.name == "finish"

    @pytest.mark.asyncio
    async def test_format_error_after_retries(self):
        bad = text("x", tool_calls=call("a") + call("b"))
        client = QueueClient(bad, bad, bad)
        channel = CompletionChannel(client, completion_retries=2, retry_delay=0)

        with pytest.raises(CompletionFormatError) as excinfo:
            await channel.request_action([])
        assert excinfo.value.attempts == 3
        assert client.calls == 3

    @pytest.mark.asyncio
    async def test_transport_error_retried_then_raised(self):
        client = QueueClient(ConnectionError("a"), ConnectionError("b"))
        channel = CompletionChannel(client, completion_retries=1, retry_delay=0)
        with pytest.raises(CompletionError) as excinfo:
            await channel.request_action([])
        assert not isinstance(excinfo.value, CompletionFormatError)
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self):
        client = QueueClient("hang", text("late"))
        channel = CompletionChannel(client, stream_timeout=0.05, retry_delay=0)
        with pytest.raises(CompletionTimeout):
            await channel.request_action([])
        assert client.calls == 1


class TestRequestJson:

    @pytest.mark.asyncio
    async def test_validator_rejections_are_retried(self):
        client = QueueClient(text('{"tasks": []}'), text('{"tasks": ["one"]}'))

        def validate(obj):
            return None if obj.get("tasks") else "empty"

        reply = await CompletionChannel(client, retry_delay=0).request_json([], validate=validate)
        assert reply == {"tasks": ["one"]}
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_no_json(self):
        client = QueueClient(text("hmm"), text("still no"))
        channel = CompletionChannel(client, completion_retries=1, retry_delay=0)
        with pytest.raises(CompletionFormatError):
            await channel.request_json([], purpose="planning")

    @pytest.mark.asyncio
    async def test_request_text(self):
        client = QueueClient(text("Done: ", "created app.py"))
        completion = await CompletionChannel(client).request_text([])
        assert completion.content == "Done: created app.py"
