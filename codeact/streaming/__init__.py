"""
CodeAct Streaming - Ordered run message streams

Usage:
    from codeact.streaming import MessageStream, RunMessage, MessageStatus

    stream = MessageStream(conversation_id="c1")
    async for message in stream.subscribe():
        ...
"""

from .models import MessageKind, MessageStatus, RunMessage
from .engine import MessageBuffer, MessageEmitter, MessageHandler, MessageStream

__all__ = [
    "MessageKind",
    "MessageStatus",
    "RunMessage",
    "MessageBuffer",
    "MessageEmitter",
    "MessageHandler",
    "MessageStream",
]
