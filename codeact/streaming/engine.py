"""
CodeAct Streaming Engine - Per-run ordered message stream

This module provides:
- MessageBuffer: Bounded history with sequence numbering
- MessageEmitter: Callback-based distribution by action type
- MessageStream: Buffer + handlers + async subscriptions + persistence sink
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ..protocols import MessageSink, NullMessageSink
from .models import RunMessage

logger = logging.getLogger(__name__)


# Type for message handlers
MessageHandler = Callable[[RunMessage], Awaitable[None]]

_CLOSED = object()


@dataclass
class MessageBuffer:
    """
    Bounded message history.

    Sequence numbers keep increasing even when old messages fall out of
    the buffer, so they always reflect emission order.
    """

    max_size: int = 1000
    messages: deque = field(default_factory=lambda: deque(maxlen=1000))
    sequence_counter: int = 0

    def __post_init__(self):
        self.messages = deque(maxlen=self.max_size)

    def add(self, message: RunMessage) -> None:
        message.sequence = self.sequence_counter
        self.sequence_counter += 1
        self.messages.append(message)

    def get_all(self) -> List[RunMessage]:
        return list(self.messages)

    def get_since(self, sequence: int) -> List[RunMessage]:
        """Get messages after a specific sequence number"""
        return [m for m in self.messages if m.sequence > sequence]

    def get_by_type(self, action_type: str) -> List[RunMessage]:
        return [m for m in self.messages if m.action_type == action_type]

    def __len__(self) -> int:
        return len(self.messages)


class MessageEmitter:
    """Registers handlers per action type or for every message"""

    def __init__(self):
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._global_handlers: List[MessageHandler] = []

    def on(self, action_type: str, handler: MessageHandler) -> None:
        self._handlers.setdefault(action_type, []).append(handler)

    def on_any(self, handler: MessageHandler) -> None:
        self._global_handlers.append(handler)

    def off(self, action_type: str, handler: MessageHandler) -> bool:
        try:
            self._handlers.get(action_type, []).remove(handler)
            return True
        except ValueError:
            return False

    async def emit(self, message: RunMessage) -> None:
        """Call every matching handler; handler failures are logged, not raised"""
        for handler in self._handlers.get(message.action_type, []):
            try:
                await handler(message)
            except Exception as e:
                logger.warning(f"Message handler error for {message.action_type}: {e}", exc_info=True)

        for handler in self._global_handlers:
            try:
                await handler(message)
            except Exception as e:
                logger.warning(f"Global message handler error: {e}", exc_info=True)

    def clear(self) -> None:
        self._handlers.clear()
        self._global_handlers.clear()


class MessageStream:
    """
    Ordered, per-run stream of RunMessages.

    Messages are numbered, kept in a bounded buffer, handed to registered
    handlers, pushed to live subscribers and forwarded to the persistence
    sink. After ``close()`` nothing more is delivered.

    Example:
        stream = MessageStream(conversation_id="c1", run_id="r1")

        async def consume():
            async for message in stream.subscribe(include_history=True):
                print(message.action_type, message.status.value)

        stream.on_any(log_message)
        await stream.emit(RunMessage(action_type="plan", status=MessageStatus.SUCCESS))
        stream.close()
    """

    def __init__(
        self,
        conversation_id: str,
        run_id: Optional[str] = None,
        sink: Optional[MessageSink] = None,
        buffer_size: int = 1000,
    ):
        self.conversation_id = conversation_id
        self.run_id = run_id
        self.sink: MessageSink = sink or NullMessageSink()
        self.buffer = MessageBuffer(max_size=buffer_size)
        self.emitter = MessageEmitter()
        self._queues: Dict[str, asyncio.Queue] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, action_type: str, handler: MessageHandler) -> None:
        self.emitter.on(action_type, handler)

    def on_any(self, handler: MessageHandler) -> None:
        self.emitter.on_any(handler)

    async def emit(self, message: RunMessage) -> Optional[RunMessage]:
        """
        Deliver one message.

        Returns:
            The numbered message, or None if the stream is already closed
        """
        if self._closed:
            logger.debug(
                f"[Stream] Dropping {message.action_type} after close (run={self.run_id})"
            )
            return None

        self.buffer.add(message)

        try:
            await self.sink.save(self.conversation_id, message)
        except Exception as e:
            logger.warning(f"[Stream] Sink failed to persist message {message.uuid}: {e}")

        await self.emitter.emit(message)

        for queue in self._queues.values():
            queue.put_nowait(message)

        return message

    async def subscribe(self, include_history: bool = False) -> AsyncIterator[RunMessage]:
        """
        Iterate over messages as they are emitted until the stream closes.

        Args:
            include_history: Yield buffered messages first
        """
        stream_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue()
        if include_history:
            for message in self.buffer.get_all():
                queue.put_nowait(message)
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._queues[stream_id] = queue

        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._queues.pop(stream_id, None)

    def close(self) -> None:
        """Stop delivery and end every subscription"""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues.values():
            queue.put_nowait(_CLOSED)

    def history(self, since_sequence: Optional[int] = None) -> List[RunMessage]:
        if since_sequence is not None:
            return self.buffer.get_since(since_sequence)
        return self.buffer.get_all()

    def __len__(self) -> int:
        return len(self.buffer)
