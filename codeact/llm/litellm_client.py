"""
Completion client that routes every provider through litellm.

The engine only needs two things from a provider: a streamed completion
with tool calls, and the occasional one-shot completion for planning and
summaries. litellm covers both for OpenAI, Anthropic, Azure, Gemini,
Ollama and the OpenAI-compatible hosts (DeepSeek, DashScope).
"""

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional

from .base import (
    BaseLLMClient,
    LLMConfig,
    LLMResponse,
    StreamChunk,
    ToolCall,
    ToolCallAccumulator,
    Usage,
)

logger = logging.getLogger(__name__)


class _Route(NamedTuple):
    prefix: Optional[str]
    key_env: Optional[str]


_ROUTES: Dict[str, _Route] = {
    "openai": _Route(None, "OPENAI_API_KEY"),
    "anthropic": _Route("anthropic", "ANTHROPIC_API_KEY"),
    "azure": _Route("azure", "AZURE_OPENAI_API_KEY"),
    "gemini": _Route("gemini", "GOOGLE_API_KEY"),
    "ollama": _Route("ollama", None),
    "deepseek": _Route("deepseek", "DEEPSEEK_API_KEY"),
    # served through its OpenAI-compatible endpoint, so base_url is required
    "dashscope": _Route("openai", "DASHSCOPE_API_KEY"),
}


def build_litellm_model_string(provider: str, model: str) -> str:
    """
    Return the model name litellm expects for ``provider``.

    litellm picks the backend from a ``<prefix>/`` on the model name.
    Providers without an entry in the routing table get the bare name
    and litellm falls back to its own detection.
    """
    route = _ROUTES.get(provider.lower())
    if route is None or route.prefix is None:
        return model
    return f"{route.prefix}/{model}"


def _usage_from(raw: Any) -> Optional[Usage]:
    if not raw:
        return None
    return Usage(
        prompt_tokens=getattr(raw, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(raw, "completion_tokens", 0) or 0,
        total_tokens=getattr(raw, "total_tokens", 0) or 0,
    )


def _tool_calls_from(message: Any) -> Optional[List[ToolCall]]:
    raw_calls = getattr(message, "tool_calls", None)
    if not raw_calls:
        return None

    calls = []
    for raw in raw_calls:
        arguments = raw.function.arguments
        if isinstance(arguments, str):
            # Malformed JSON is left as a string; the registry reports it
            # back to the model as an invalid-arguments result.
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                logger.warning(f"[LiteLLM] tool call {raw.function.name} has non-JSON arguments")
        calls.append(ToolCall(id=raw.id, name=raw.function.name, arguments=arguments))
    return calls


class LiteLLMClient(BaseLLMClient):
    """
    litellm-backed client.

    Example:
        client = LiteLLMClient(config=LLMConfig(model="claude-3-5-sonnet"), provider_name="anthropic")
        async for chunk in client.stream_completion(messages, tools=tools):
            ...

    ``config`` may be omitted in favour of keyword arguments, in which case
    ``model`` is required and the rest are passed to LLMConfig.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        provider_name: str = "openai",
        **kwargs,
    ):
        if config is None:
            model = kwargs.pop("model", None)
            if not model:
                raise ValueError("model is required")
            config = LLMConfig(model=model, **kwargs)
            kwargs = {}
        super().__init__(config, **kwargs)

        self.provider = provider_name.lower()
        self._litellm_model = build_litellm_model_string(self.provider, self.config.model)
        self._transport = self._transport_options()

        logger.info(f"[LiteLLM] client ready: provider={self.provider} model={self._litellm_model}")

    def _transport_options(self) -> Dict[str, Any]:
        """Connection settings shared by every request"""
        options: Dict[str, Any] = {"timeout": self.config.timeout}
        if self.config.base_url:
            options["api_base"] = self.config.base_url

        key = self.config.api_key
        route = _ROUTES.get(self.provider)
        if not key and route and route.key_env:
            key = os.environ.get(route.key_env)
        if key:
            options["api_key"] = key
        return options

    def _request_params(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        stream: bool,
        **kwargs,
    ) -> Dict[str, Any]:
        params = dict(self._transport)
        params.update(self._model_params(self.config.model, **kwargs))
        params["model"] = kwargs.get("model") or self._litellm_model
        params["messages"] = messages

        if tools:
            params["tools"] = tools
            params["tool_choice"] = kwargs.get("tool_choice", "auto")
        if kwargs.get("stop") is not None:
            params["stop"] = kwargs["stop"]
        if stream:
            # Without this the usage block never arrives on streamed responses
            params.update(stream=True, stream_options={"include_usage": True})
        return params

    def _cost_of(self, response: Any) -> Optional[float]:
        import litellm

        try:
            return litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[LiteLLM] cost unavailable for {self._litellm_model}: {e}")
            return None

    async def _call_api(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> LLMResponse:
        import litellm

        params = self._request_params(messages, tools, stream=False, **kwargs)
        logger.debug(
            f"[LiteLLM] completion model={params['model']} "
            f"messages={len(messages)} tools={len(tools or [])}"
        )
        response = await litellm.acompletion(**params)

        choice = response.choices[0]
        usage = _usage_from(response.usage)
        if usage is not None and self.config.track_costs:
            usage.cost = self._cost_of(response)

        return LLMResponse(
            content=choice.message.content or "",
            tool_calls=_tool_calls_from(choice.message),
            stop_reason=self._parse_stop_reason(choice.finish_reason),
            usage=usage,
            model=getattr(response, "model", None) or self.config.model,
            raw_response=response,
        )

    async def _stream_api(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> AsyncIterator[StreamChunk]:
        import litellm

        params = self._request_params(messages, tools, stream=True, **kwargs)
        stream = await litellm.acompletion(**params)
        pending = ToolCallAccumulator()

        try:
            async for event in stream:
                if not event.choices:
                    usage = _usage_from(getattr(event, "usage", None))
                    if usage is not None:
                        yield StreamChunk(content="", is_final=True, usage=usage)
                    continue

                choice = event.choices[0]
                for fragment in choice.delta.tool_calls or []:
                    pending.add_openai_delta(fragment)

                if choice.finish_reason is None:
                    yield StreamChunk(content=choice.delta.content or "")
                    continue

                yield StreamChunk(
                    content=choice.delta.content or "",
                    tool_calls=pending.build() if pending else None,
                    is_final=True,
                    stop_reason=self._parse_stop_reason(choice.finish_reason),
                )
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()
