"""
CodeAct Protocols - Abstract interfaces for dependency injection

These protocols define the contracts that external collaborators must fulfill.
The engine emits run messages but never stores them; a persistence layer plugs
in through MessageSink.
"""

from typing import Protocol, List, Dict, Any, Optional, AsyncIterator, runtime_checkable


@runtime_checkable
class StreamingLLMClientProtocol(Protocol):
    """
    Abstract interface for streaming LLM clients

    Any object with a ``stream_completion`` async generator can back a
    CompletionChannel. BaseLLMClient implements it.
    """

    def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        config: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> AsyncIterator[Any]:
        """Yield StreamChunk objects as they arrive from the provider"""
        ...


@runtime_checkable
class MessageSink(Protocol):
    """
    Abstract interface for durable message storage

    Implement this protocol to persist run messages keyed by conversation.

    Example:
        class PostgresSink:
            async def save(self, conversation_id, message):
                await self.db.execute(
                    "INSERT INTO messages (conversation_id, body) VALUES ($1, $2)",
                    conversation_id, json.dumps(message.to_dict()),
                )
    """

    async def save(self, conversation_id: str, message: Any) -> None:
        """Persist one run message"""
        ...


class NullMessageSink:
    """Sink used when no persistence layer is configured"""

    async def save(self, conversation_id: str, message: Any) -> None:
        return None
