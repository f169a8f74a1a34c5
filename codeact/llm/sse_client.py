"""
CodeAct SSE Client - OpenAI-compatible streaming over raw HTTP

Talks to any ``/chat/completions`` endpoint that streams server-sent events:
each frame is one or more ``field: value`` lines terminated by a blank line,
and ``data: [DONE]`` ends the stream. Useful for self-hosted gateways
(vLLM, LM Studio, OpenRouter-style proxies) without going through litellm.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import httpx

from .base import (
    BaseLLMClient,
    LLMConfig,
    LLMResponse,
    StreamChunk,
    ToolCallAccumulator,
    Usage,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """
    Incremental server-sent-event decoder.

    Feed it lines (without trailing newlines); it returns the ``data``
    payload of each frame once the blank separator line arrives. Multiple
    ``data:`` lines in one frame are joined with newlines; comment lines
    (starting with ``:``) and other fields are ignored.
    """

    def __init__(self):
        self._data_lines: List[str] = []

    def feed(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if line == "":
            return self._flush()
        if line.startswith(":"):
            return None
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "data":
            self._data_lines.append(value)
        return None

    def finish(self) -> Optional[str]:
        """Flush a trailing frame that was not followed by a blank line"""
        return self._flush()

    def _flush(self) -> Optional[str]:
        if not self._data_lines:
            return None
        data = "\n".join(self._data_lines)
        self._data_lines = []
        return data


def decode_frames(lines: Iterable[str]) -> List[str]:
    """Decode a complete list of lines into frame payloads"""
    decoder = SSEDecoder()
    frames = []
    for line in lines:
        frame = decoder.feed(line)
        if frame is not None:
            frames.append(frame)
    tail = decoder.finish()
    if tail is not None:
        frames.append(tail)
    return frames


async def _read_frames(response: httpx.Response) -> AsyncIterator[str]:
    """Frame payloads of a streamed response, including an unterminated last frame"""
    decoder = SSEDecoder()
    async for line in response.aiter_lines():
        frame = decoder.feed(line)
        if frame is not None:
            yield frame
    tail = decoder.finish()
    if tail is not None:
        yield tail


class SSEStreamClient(BaseLLMClient):
    """
    OpenAI-compatible chat client over httpx with SSE streaming.

    Example:
        client = SSEStreamClient(
            config=LLMConfig(model="qwen2.5-coder", base_url="http://localhost:8000/v1"),
        )
        async for chunk in client.stream_completion(messages):
            print(chunk.content, end="")
    """

    provider = "sse"

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        if config is None:
            if "model" not in kwargs:
                raise ValueError("model is required")
            model = kwargs.pop("model")
            config = LLMConfig(model=model, **kwargs)
            kwargs = {}
        super().__init__(config, **kwargs)
        if not self.config.base_url:
            raise ValueError("base_url is required for SSEStreamClient")
        self._transport = transport

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json", **self.config.default_headers}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers=headers,
                timeout=httpx.Timeout(self.config.timeout, read=self.config.stream_timeout),
                transport=self._transport,
            )
        return self._client

    def _payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        stream: bool,
        **kwargs,
    ) -> Dict[str, Any]:
        model = kwargs.get("model", self.config.model)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            **self._model_params(model, **kwargs),
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = kwargs.get("tool_choice", "auto")
        if "stop" in kwargs:
            payload["stop"] = kwargs["stop"]
        return payload

    async def _call_api(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> LLMResponse:
        client = self._get_client()
        response = await client.post("/chat/completions", json=self._payload(messages, tools, False, **kwargs))
        response.raise_for_status()
        body = response.json()

        choice = body["choices"][0]
        message = choice.get("message", {})
        tool_calls = None
        if message.get("tool_calls"):
            accumulator = ToolCallAccumulator()
            for idx, tc in enumerate(message["tool_calls"]):
                accumulator.add_openai_delta({**tc, "index": idx})
            tool_calls = accumulator.build()

        usage = None
        if body.get("usage"):
            usage = Usage(
                prompt_tokens=body["usage"].get("prompt_tokens", 0),
                completion_tokens=body["usage"].get("completion_tokens", 0),
                total_tokens=body["usage"].get("total_tokens", 0),
            )

        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            stop_reason=self._parse_stop_reason(choice.get("finish_reason")),
            usage=usage,
            model=body.get("model", self.config.model),
            raw_response=body,
        )

    async def _stream_api(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> AsyncIterator[StreamChunk]:
        client = self._get_client()
        payload = self._payload(messages, tools, True, **kwargs)

        async with client.stream("POST", "/chat/completions", json=payload) as response:
            if response.status_code >= 400:
                body = await response.aread()
                raise httpx.HTTPStatusError(
                    f"Provider returned {response.status_code}: {body[:500]!r}",
                    request=response.request,
                    response=response,
                )

            accumulator = ToolCallAccumulator()
            async for frame in _read_frames(response):
                if frame.strip() == DONE_SENTINEL:
                    break
                chunk = self._parse_frame(frame, accumulator)
                if chunk is not None:
                    yield chunk

    def _parse_frame(self, frame: str, accumulator: ToolCallAccumulator) -> Optional[StreamChunk]:
        try:
            event = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning(f"[SSE] Dropping undecodable frame: {frame[:120]!r}")
            return None

        if event.get("error"):
            raise RuntimeError(f"Provider stream error: {event['error']}")

        choices = event.get("choices") or []
        if not choices:
            if event.get("usage"):
                return StreamChunk(
                    content="",
                    is_final=True,
                    usage=Usage(
                        prompt_tokens=event["usage"].get("prompt_tokens", 0),
                        completion_tokens=event["usage"].get("completion_tokens", 0),
                        total_tokens=event["usage"].get("total_tokens", 0),
                    ),
                )
            return None

        choice = choices[0]
        delta = choice.get("delta") or {}
        for tc_delta in delta.get("tool_calls") or []:
            accumulator.add_openai_delta(tc_delta)

        finish_reason = choice.get("finish_reason")
        is_final = finish_reason is not None
        return StreamChunk(
            content=delta.get("content") or "",
            tool_calls=accumulator.build() if is_final and accumulator else None,
            is_final=is_final,
            stop_reason=self._parse_stop_reason(finish_reason) if is_final else None,
        )
