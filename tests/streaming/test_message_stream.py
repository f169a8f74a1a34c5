"""
Tests for CodeAct run message streams.

Tests:
- RunMessage serialization
- MessageBuffer sequencing and bounds
- MessageEmitter handler dispatch
- MessageStream delivery, subscriptions, sink and close
"""

import asyncio

import pytest

from codeact.protocols import MessageSink
from codeact.streaming import (
    MessageBuffer,
    MessageEmitter,
    MessageKind,
    MessageStatus,
    MessageStream,
    RunMessage,
)


def message(action_type="run_command", status=MessageStatus.SUCCESS, **kwargs):
    return RunMessage(action_type=action_type, status=status, **kwargs)


class RecordingSink:
    def __init__(self, fail=False):
        self.saved = []
        self.fail = fail

    async def save(self, conversation_id, message):
        if self.fail:
            raise ConnectionError("db down")
        self.saved.append((conversation_id, message.sequence, message.action_type))


# ============================================================================
# Models
# ============================================================================

class TestRunMessage:

    def test_round_trip(self):
        original = message(
            content="[exit code: 0]",
            payload={"command": "ls"},
            task_id="task-1",
            metadata={"exit_code": 0},
            file_path="a.py",
        )
        restored = RunMessage.from_dict(original.to_dict())
        assert restored == original

    def test_to_dict_uses_plain_values(self):
        data = message(status=MessageStatus.PENDING).to_dict()
        assert data["status"] == "pending"
        assert isinstance(data["timestamp"], str)

    def test_terminal(self):
        assert message(MessageKind.RUN_END).is_terminal
        assert not message(MessageKind.SUMMARY).is_terminal

    def test_unique_ids(self):
        assert message().uuid != message().uuid


# ============================================================================
# Buffer / emitter
# ============================================================================

class TestMessageBuffer:

    def test_sequence_survives_eviction(self):
        buffer = MessageBuffer(max_size=2)
        for _ in range(3):
            buffer.add(message())

        assert len(buffer) == 2
        assert [m.sequence for m in buffer.get_all()] == [1, 2]
        assert [m.sequence for m in buffer.get_since(1)] == [2]

    def test_by_type(self):
        buffer = MessageBuffer()
        buffer.add(message(MessageKind.PLAN))
        buffer.add(message("write_file"))
        assert [m.action_type for m in buffer.get_by_type("write_file")] == ["write_file"]


class TestMessageEmitter:

    @pytest.mark.asyncio
    async def test_typed_and_global_handlers(self):
        emitter = MessageEmitter()
        seen = []

        async def on_plan(m):
            seen.append(("plan", m.action_type))

        async def on_any(m):
            seen.append(("any", m.action_type))

        emitter.on(MessageKind.PLAN, on_plan)
        emitter.on_any(on_any)
        await emitter.emit(message(MessageKind.PLAN))
        await emitter.emit(message("read_file"))

        assert seen == [("plan", "plan"), ("any", "plan"), ("any", "read_file")]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        emitter = MessageEmitter()
        seen = []

        async def broken(m):
            raise RuntimeError("handler bug")

        async def ok(m):
            seen.append(m.action_type)

        emitter.on("finish", broken)
        emitter.on_any(ok)
        await emitter.emit(message("finish"))
        assert seen == ["finish"]

    def test_off(self):
        emitter = MessageEmitter()

        async def handler(m):
            pass

        emitter.on("finish", handler)
        assert emitter.off("finish", handler) is True
        assert emitter.off("finish", handler) is False


# ============================================================================
# MessageStream
# ============================================================================

class TestMessageStream:

    def test_recording_sink_matches_protocol(self):
        assert isinstance(RecordingSink(), MessageSink)

    @pytest.mark.asyncio
    async def test_emit_numbers_and_persists(self):
        sink = RecordingSink()
        stream = MessageStream(conversation_id="c1", run_id="r1", sink=sink)

        first = await stream.emit(message(MessageKind.PLAN))
        second = await stream.emit(message("write_file"))

        assert (first.sequence, second.sequence) == (0, 1)
        assert sink.saved == [("c1", 0, "plan"), ("c1", 1, "write_file")]
        assert len(stream) == 2

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_block_delivery(self):
        stream = MessageStream(conversation_id="c1", sink=RecordingSink(fail=True))
        assert await stream.emit(message()) is not None
        assert len(stream.history()) == 1

    @pytest.mark.asyncio
    async def test_nothing_after_close(self):
        sink = RecordingSink()
        stream = MessageStream(conversation_id="c1", sink=sink)
        await stream.emit(message(MessageKind.RUN_END))
        stream.close()
        stream.close()

        assert stream.closed
        assert await stream.emit(message()) is None
        assert len(sink.saved) == 1

    @pytest.mark.asyncio
    async def test_live_subscription_ends_on_close(self):
        stream = MessageStream(conversation_id="c1")
        received = []

        async def consume():
            async for m in stream.subscribe():
                received.append(m.action_type)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await stream.emit(message(MessageKind.PLAN))
        await stream.emit(message(MessageKind.RUN_END))
        stream.close()
        await asyncio.wait_for(consumer, timeout=5)

        assert received == ["plan", "run_end"]

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_history(self):
        stream = MessageStream(conversation_id="c1")
        await stream.emit(message(MessageKind.PLAN))
        await stream.emit(message("run_command"))
        stream.close()

        replay = [m.sequence async for m in stream.subscribe(include_history=True)]
        assert replay == [0, 1]
        assert [m async for m in stream.subscribe()] == []

    @pytest.mark.asyncio
    async def test_history_since(self):
        stream = MessageStream(conversation_id="c1")
        for _ in range(3):
            await stream.emit(message())
        assert [m.sequence for m in stream.history(since_sequence=0)] == [1, 2]

    @pytest.mark.asyncio
    async def test_handlers_see_numbered_messages(self):
        stream = MessageStream(conversation_id="c1")
        sequences = []

        async def record(m):
            sequences.append(m.sequence)

        stream.on_any(record)
        await stream.emit(message())
        await stream.emit(message())
        assert sequences == [0, 1]
