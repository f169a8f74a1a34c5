"""
CodeAct Completion Channel - Streaming completions with parsing and retries

The channel is the single way the engine talks to a language model:
- ``stream()`` consumes one provider stream, delivers every token delta to a
  caller-supplied sink as it arrives, and returns the aggregated message.
- ``request_action()`` parses the aggregate into at most one tool call,
  retrying on malformed output with a fixed backoff.
- ``request_json()`` does the same for planning/reflection JSON replies.

Each call owns its own provider stream, so many runs can share one channel
without blocking each other. Cancellation aborts the stream in flight.
"""

import asyncio
import inspect
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..cancellation import CancelToken
from ..constants import (
    DEFAULT_COMPLETION_RETRIES,
    DEFAULT_COMPLETION_TIMEOUT,
    DEFAULT_RETRY_DELAY,
)
from ..errors import (
    CancellationRequested,
    CompletionError,
    CompletionFormatError,
    CompletionTimeout,
)
from ..protocols import StreamingLLMClientProtocol
from .base import StopReason, ToolCall, Usage

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass
class TokenDelta:
    """One streamed piece of model output"""
    index: int
    content: str


DeltaSink = Callable[[TokenDelta], Union[None, Awaitable[None]]]


@dataclass
class Completion:
    """Aggregated result of one completion stream"""
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: Optional[StopReason] = None
    deltas: int = 0


@dataclass
class ActionProposal:
    """The model's next step: an explanation plus zero or one tool call"""
    thought: str
    tool_call: Optional[ToolCall]
    usage: Usage = field(default_factory=Usage)
    attempts: int = 1

    @property
    def wants_finish(self) -> bool:
        return self.tool_call is None


class _FormatProblem(Exception):
    """Internal: aggregated output did not match the expected format"""


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Extract the first JSON object from model output (fenced or bare)."""
    raw = (text or "").strip()
    if not raw:
        return None
    fenced = _JSON_FENCE.search(raw)
    if fenced:
        raw = fenced.group(1).strip()
    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass
    m = re.search(r"\{.*\}", raw, flags=re.DOTALL)
    if not m:
        return None
    try:
        parsed = json.loads(m.group(0))
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        return None


def parse_action(completion: Completion) -> ActionProposal:
    """
    Interpret an aggregated completion as a thought plus at most one tool call.

    Native tool calls take precedence; otherwise a fenced ```json block of the
    form ``{"tool": name, "arguments": {...}}`` in the content is accepted.
    No tool call at all means the model wants to finish the current task.

    Raises:
        _FormatProblem: Multiple tool calls, unnamed calls, or unparseable arguments
    """
    content = completion.content or ""

    if completion.tool_calls:
        if len(completion.tool_calls) > 1:
            names = [tc.name for tc in completion.tool_calls]
            raise _FormatProblem(f"expected at most one tool call, got {len(names)}: {names}")
        tc = completion.tool_calls[0]
        if not tc.name:
            raise _FormatProblem("tool call without a name")
        if not tc.has_valid_arguments:
            raise _FormatProblem(f"arguments for '{tc.name}' are not a JSON object: {str(tc.arguments)[:200]}")
        if not tc.id:
            tc.id = uuid.uuid4().hex
        return ActionProposal(thought=content.strip(), tool_call=tc, usage=completion.usage)

    fences = _JSON_FENCE.findall(content)
    if not fences:
        return ActionProposal(thought=content.strip(), tool_call=None, usage=completion.usage)
    if len(fences) > 1:
        raise _FormatProblem(f"expected at most one ```json action block, got {len(fences)}")

    try:
        block = json.loads(fences[0])
    except json.JSONDecodeError as e:
        raise _FormatProblem(f"action block is not valid JSON: {e}")
    if not isinstance(block, dict):
        raise _FormatProblem("action block must be a JSON object")

    name = block.get("tool") or block.get("name")
    arguments = block.get("arguments", {})
    if not isinstance(name, str) or not name:
        raise _FormatProblem("action block has no 'tool' name")
    if not isinstance(arguments, dict):
        raise _FormatProblem(f"arguments for '{name}' must be an object")

    thought = _JSON_FENCE.sub("", content).strip()
    return ActionProposal(
        thought=thought,
        tool_call=ToolCall(id=uuid.uuid4().hex, name=name, arguments=arguments),
        usage=completion.usage,
    )


async def _deliver(sink: Optional[DeltaSink], delta: TokenDelta) -> None:
    if sink is None:
        return
    result = sink(delta)
    if inspect.isawaitable(result):
        await result


class CompletionChannel:
    """
    Uniform streaming interface over any StreamingLLMClientProtocol client.

    Example:
        channel = CompletionChannel(LiteLLMClient(model="gpt-4o"))
        proposal = await channel.request_action(
            messages, tools=registry.schemas(), sink=print_delta, cancel=token,
        )
        if proposal.tool_call:
            ...
    """

    def __init__(
        self,
        client: StreamingLLMClientProtocol,
        completion_retries: int = DEFAULT_COMPLETION_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        stream_timeout: float = DEFAULT_COMPLETION_TIMEOUT,
    ):
        if client is None:
            raise ValueError("client is required")
        self.client = client
        self.completion_retries = completion_retries
        self.retry_delay = retry_delay
        self.stream_timeout = stream_timeout

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        sink: Optional[DeltaSink] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Completion:
        """
        Consume one completion stream.

        Raises:
            CancellationRequested: The token fired; the provider stream was aborted
            CompletionTimeout: The stream did not finish within the timeout
            CompletionError: The provider failed
        """
        cancel = cancel or CancelToken()
        timeout = timeout if timeout is not None else self.stream_timeout
        try:
            return await cancel.guard(self._consume(messages, tools, sink), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Channel] Completion stream exceeded {timeout}s, aborted")
            raise CompletionTimeout(f"Completion stream exceeded {timeout}s")

    async def _consume(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        sink: Optional[DeltaSink],
    ) -> Completion:
        parts: List[str] = []
        tool_calls: List[ToolCall] = []
        usage = Usage()
        stop_reason: Optional[StopReason] = None
        index = 0

        stream = self.client.stream_completion(messages=messages, tools=tools)
        try:
            async for chunk in stream:
                if chunk.content:
                    parts.append(chunk.content)
                    await _deliver(sink, TokenDelta(index=index, content=chunk.content))
                    index += 1
                if chunk.tool_calls:
                    tool_calls = list(chunk.tool_calls)
                if chunk.usage:
                    usage.add(chunk.usage)
                if chunk.stop_reason is not None:
                    stop_reason = chunk.stop_reason
        except (CancellationRequested, asyncio.CancelledError):
            raise
        except CompletionError:
            raise
        except Exception as e:
            logger.warning(f"[Channel] Provider stream failed: {type(e).__name__}: {e}")
            raise CompletionError(f"Provider stream failed: {e}") from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return Completion(
            content="".join(parts),
            tool_calls=tool_calls,
            usage=usage,
            stop_reason=stop_reason,
            deltas=index,
        )

    async def _with_retries(
        self,
        purpose: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        sink: Optional[DeltaSink],
        cancel: Optional[CancelToken],
        parse: Callable[[Completion], Any],
    ) -> Any:
        cancel = cancel or CancelToken()
        attempts = self.completion_retries + 1
        last_problem = ""
        last_content = ""
        transport_error: Optional[CompletionError] = None
        usage = Usage()

        for attempt in range(1, attempts + 1):
            try:
                completion = await self.stream(messages, tools=tools, sink=sink, cancel=cancel)
            except CompletionTimeout:
                raise
            except CompletionError as e:
                transport_error = e
                last_problem = str(e)
            else:
                usage.add(completion.usage)
                try:
                    result = parse(completion)
                except _FormatProblem as e:
                    transport_error = None
                    last_problem = str(e)
                    last_content = completion.content
                else:
                    if isinstance(result, ActionProposal):
                        result.attempts = attempt
                        result.usage = usage
                    return result

            if attempt < attempts:
                logger.warning(
                    f"[Channel] {purpose} attempt {attempt}/{attempts} failed ({last_problem}), "
                    f"retrying in {self.retry_delay}s"
                )
                await cancel.guard(asyncio.sleep(self.retry_delay))

        if transport_error is not None:
            raise transport_error
        logger.error(f"[Channel] {purpose} output unparseable after {attempts} attempts: {last_problem}")
        raise CompletionFormatError(
            f"{purpose} output unparseable after {attempts} attempts: {last_problem}",
            attempts=attempts,
            raw_content=last_content,
        )

    async def request_action(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        sink: Optional[DeltaSink] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ActionProposal:
        """
        Ask the model for its next action.

        Raises:
            CompletionFormatError: Output unparseable after all retries
            CompletionTimeout, CompletionError, CancellationRequested
        """
        return await self._with_retries("action", messages, tools, sink, cancel, parse_action)

    async def request_json(
        self,
        messages: List[Dict[str, Any]],
        sink: Optional[DeltaSink] = None,
        cancel: Optional[CancelToken] = None,
        validate: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None,
        purpose: str = "json",
    ) -> Dict[str, Any]:
        """
        Ask the model for a JSON object.

        Args:
            validate: Optional check returning an error message for unusable objects

        Raises:
            CompletionFormatError: No acceptable object after all retries
        """
        def parse(completion: Completion) -> Dict[str, Any]:
            obj = extract_json_object(completion.content)
            if obj is None:
                raise _FormatProblem("no JSON object in output")
            if validate is not None:
                problem = validate(obj)
                if problem:
                    raise _FormatProblem(problem)
            return obj

        return await self._with_retries(purpose, messages, None, sink, cancel, parse)

    async def request_text(
        self,
        messages: List[Dict[str, Any]],
        sink: Optional[DeltaSink] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Completion:
        """Stream a plain-text answer (no tools, no parsing)"""
        return await self.stream(messages, tools=None, sink=sink, cancel=cancel)
