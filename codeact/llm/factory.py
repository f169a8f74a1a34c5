"""
Build the configured LLM client.
"""

import logging

from ..config.loader import LLMSettings
from .base import BaseLLMClient, LLMConfig
from .litellm_client import LiteLLMClient
from .sse_client import SSEStreamClient

logger = logging.getLogger(__name__)


def create_llm_client(settings: LLMSettings) -> BaseLLMClient:
    """
    Create a streaming client for the configured transport.

    ``litellm`` routes through litellm to any supported provider; ``sse``
    talks directly to an OpenAI-compatible endpoint and needs ``base_url``.
    """
    config = LLMConfig(
        model=settings.model,
        api_key=settings.api_key,
        base_url=settings.base_url,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        timeout=settings.timeout,
    )
    if settings.transport == "sse":
        logger.info(f"[LLM] Using SSE transport: {settings.base_url} model={settings.model}")
        return SSEStreamClient(config=config)
    return LiteLLMClient(config=config, provider_name=settings.provider)
