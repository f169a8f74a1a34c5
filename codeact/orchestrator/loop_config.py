"""Code-act loop configuration and per-run loop state."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config.loader import EngineConfig
from ..constants import (
    DEFAULT_ACTION_TIMEOUT,
    DEFAULT_COMPLETION_RETRIES,
    DEFAULT_COMPLETION_TIMEOUT,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROVISION_TIMEOUT,
    DEFAULT_RETRY_DELAY,
)


@dataclass
class LoopConfig:
    """All code-act loop bounds in one place."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    """Iterations per run, across reflections."""
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    """Consecutive failed iterations that trigger reflection."""
    completion_retries: int = DEFAULT_COMPLETION_RETRIES
    """Retries after an unparseable completion."""
    retry_delay: float = DEFAULT_RETRY_DELAY
    """Fixed delay between completion retries, in seconds."""
    completion_timeout: float = DEFAULT_COMPLETION_TIMEOUT
    action_timeout: float = DEFAULT_ACTION_TIMEOUT
    provision_timeout: float = DEFAULT_PROVISION_TIMEOUT
    summarize: bool = True
    """Ask the model for a summary when the run succeeds."""

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.completion_retries < 0 or self.retry_delay < 0:
            raise ValueError("completion_retries and retry_delay must not be negative")

    @classmethod
    def from_config(cls, config: EngineConfig) -> "LoopConfig":
        return cls(
            max_iterations=config.loop.max_iterations,
            failure_threshold=config.loop.failure_threshold,
            completion_retries=config.loop.completion_retries,
            retry_delay=config.loop.retry_delay,
            completion_timeout=config.timeouts.completion,
            action_timeout=config.timeouts.action,
            provision_timeout=config.timeouts.provision,
            summarize=config.loop.summarize,
        )


class LoopExit(str, Enum):
    """Why the code-act loop handed control back to the orchestrator"""
    SUMMARIZE = "summarize"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFLECT = "reflect"


@dataclass
class LoopState:
    """Counters that survive across loop segments of one run."""

    iterations: int = 0
    consecutive_failures: int = 0
    reflections: int = 0
    exit_reason: Optional[str] = None

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
