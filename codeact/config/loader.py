"""
Config Loader - Load engine configuration from YAML

Example codeact.yaml:
    llm:
      provider: openai
      model: gpt-4o
      api_key: ${OPENAI_API_KEY}

    loop:
      max_iterations: 25
      failure_threshold: 3

    runtime:
      kind: docker
      workspace_root: /var/lib/codeact/workspaces
      image: python:3.12-slim

    planning:
      mode: local_only

    tools:
      modules:
        - myapp.tools.search
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ..constants import (
    APP_PORT_BASE,
    APP_PORT_SPAN,
    DEFAULT_ACTION_TIMEOUT,
    DEFAULT_COMPLETION_RETRIES,
    DEFAULT_COMPLETION_TIMEOUT,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROVISION_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    EXECUTION_PORT_BASE,
    INSPECTION_PORT_BASE,
    MAX_RUNTIME_SESSIONS,
)

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


class LLMSettings(BaseModel):
    """Which model to talk to and over which transport"""
    provider: str = "openai"
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    transport: Literal["litellm", "sse"] = "litellm"
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout: int = 60

    model_config = ConfigDict(extra="ignore")


class LoopSettings(BaseModel):
    """Code-act loop bounds"""
    max_iterations: int = Field(DEFAULT_MAX_ITERATIONS, ge=1)
    failure_threshold: int = Field(DEFAULT_FAILURE_THRESHOLD, ge=1)
    completion_retries: int = Field(DEFAULT_COMPLETION_RETRIES, ge=0)
    retry_delay: float = Field(DEFAULT_RETRY_DELAY, ge=0)
    summarize: bool = True

    model_config = ConfigDict(extra="ignore")


class TimeoutSettings(BaseModel):
    """Timeouts in seconds"""
    provision: float = DEFAULT_PROVISION_TIMEOUT
    completion: float = DEFAULT_COMPLETION_TIMEOUT
    action: float = DEFAULT_ACTION_TIMEOUT

    model_config = ConfigDict(extra="ignore")


class PortSettings(BaseModel):
    execution_base: int = EXECUTION_PORT_BASE
    inspection_base: int = INSPECTION_PORT_BASE
    app_base: int = APP_PORT_BASE
    app_span: int = Field(APP_PORT_SPAN, ge=1)
    max_sessions: int = Field(MAX_RUNTIME_SESSIONS, ge=1)

    model_config = ConfigDict(extra="ignore")


class RuntimeSettings(BaseModel):
    """Execution environment selection"""
    kind: Literal["local", "docker", "remote"] = "local"
    workspace_root: str = "./workspaces"
    image: str = "python:3.12-slim"
    remote_url: Optional[str] = None
    remote_api_key: Optional[str] = None
    ports: PortSettings = Field(default_factory=PortSettings)

    model_config = ConfigDict(extra="ignore")


class PlanningSettings(BaseModel):
    mode: Literal["single_shot", "server_assisted", "local_only"] = "single_shot"
    server_url: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ToolSettings(BaseModel):
    # None exposes every registered tool
    allowlist: Optional[List[str]] = None
    # Import paths scanned for @tool functions
    modules: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class EngineConfig(BaseModel):
    """Top-level engine configuration"""
    llm: LLMSettings = Field(default_factory=LLMSettings)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    planning: PlanningSettings = Field(default_factory=PlanningSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)

    model_config = ConfigDict(extra="ignore")  # Ignore unknown sections in YAML


def substitute_env(raw: str, source: str = "<string>") -> str:
    """Replace ${VAR} with environment variable values."""
    def _replace_env(match):
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(
                f"Environment variable '{var_name}' not set "
                f"(referenced in config file '{source}')"
            )
        return value

    return _ENV_PATTERN.sub(_replace_env, raw)


def load_config_dict(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML config file with ${VAR} environment variable substitution."""
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()
    data = yaml.safe_load(substitute_env(raw, str(path)))
    return data or {}


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Load and validate engine configuration.

    Args:
        path: YAML file. None returns the defaults.

    Raises:
        ValueError: Referenced environment variable is not set
        pydantic.ValidationError: Config values are invalid
    """
    if path is None:
        return EngineConfig()
    config = EngineConfig.model_validate(load_config_dict(path))
    logger.info(
        f"Loaded config from {path}: llm={config.llm.provider}/{config.llm.model}, "
        f"runtime={config.runtime.kind}, planning={config.planning.mode}"
    )
    return config
