"""
CodeAct Application - Single entry point for the execution engine.

Usage:
    from codeact import CodeActApp

    app = CodeActApp("codeact.yaml")

    # Fire and observe
    handle = await app.start_run("Write fizzbuzz.py and run it", "conv-1", "user-1")
    async for message in handle.messages():
        print(message.action_type, message.status.value)

    # Or just wait for the outcome
    result = await app.run("Write fizzbuzz.py and run it", "conv-2", "user-1")
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from .config.loader import EngineConfig, load_config
from .llm.channel import CompletionChannel, DeltaSink
from .llm.factory import create_llm_client
from .orchestrator.loop_config import LoopConfig
from .orchestrator.models import RunHandle, RunResult, RuntimeFactory
from .orchestrator.orchestrator import Orchestrator
from .protocols import MessageSink
from .streaming import RunMessage
from .tools.builtin import builtin_tools
from .tools.decorator import ToolDiscovery
from .tools.models import ToolDefinition
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class CodeActApp:
    """
    CodeAct application entry point.

    Sync constructor reads config; the LLM client, tool registry and
    orchestrator are built on the first call that needs them.

    Args:
        config: Path to a YAML configuration file, an EngineConfig, or None for defaults
        extra_tools: Additional tool definitions registered before the registry freezes
        sink: Persistence sink for run messages
        runtime_factory: Override for runtime session creation (tests, custom backends)

    Example:
        app = CodeActApp("codeact.yaml")
        result = await app.run("Create a Flask hello-world app", "conv-1", "user-1")
        print(result.state.value, result.summary)
    """

    def __init__(
        self,
        config: Any = None,
        extra_tools: Optional[List[ToolDefinition]] = None,
        sink: Optional[MessageSink] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
    ):
        if isinstance(config, EngineConfig):
            self._config = config
        else:
            self._config = load_config(config)
        self._extra_tools = list(extra_tools or [])
        self._sink = sink
        self._runtime_factory = runtime_factory

        # Will be set during lazy initialization
        self._llm_client = None
        self._channel: Optional[CompletionChannel] = None
        self._registry: Optional[ToolRegistry] = None
        self._orchestrator: Optional[Orchestrator] = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._orchestrator is not None

    @property
    def orchestrator(self) -> Orchestrator:
        self._ensure_initialized()
        return self._orchestrator

    @property
    def registry(self) -> ToolRegistry:
        self._ensure_initialized()
        return self._registry

    def _ensure_initialized(self) -> None:
        """Lazy initialization, runs once on first use."""
        if self._orchestrator is not None:
            return

        cfg = self._config

        # 1. LLM client and completion channel
        self._llm_client = create_llm_client(cfg.llm)
        self._channel = CompletionChannel(
            self._llm_client,
            completion_retries=cfg.loop.completion_retries,
            retry_delay=cfg.loop.retry_delay,
            stream_timeout=cfg.timeouts.completion,
        )
        logger.info(f"LLM client: provider={cfg.llm.provider}, model={cfg.llm.model}, transport={cfg.llm.transport}")

        # 2. Tool registry: built-ins, extra definitions, then discovered modules
        registry = ToolRegistry()
        registry.load(builtin_tools())
        if self._extra_tools:
            registry.load(self._extra_tools)
        if cfg.tools.modules:
            discovered = ToolDiscovery(registry).scan_paths(cfg.tools.modules)
            logger.info(f"Discovered {discovered} tool(s) from {cfg.tools.modules}")
        registry.freeze()
        self._registry = registry
        logger.info(f"Tool registry frozen with {len(registry)} tool(s)")

        # 3. Orchestrator
        self._orchestrator = Orchestrator(
            self._channel,
            registry,
            config=cfg,
            runtime_factory=self._runtime_factory,
            sink=self._sink,
        )
        logger.info(
            f"CodeAct initialized: runtime={cfg.runtime.kind}, planning={cfg.planning.mode}"
        )

    async def start_run(
        self,
        goal: str,
        conversation_id: str,
        user_id: str,
        runtime_kind: Optional[str] = None,
        planning_mode: Optional[str] = None,
        tool_allowlist: Optional[List[str]] = None,
        history: Optional[List[Dict[str, str]]] = None,
        loop_config: Optional[LoopConfig] = None,
        on_delta: Optional[DeltaSink] = None,
    ) -> RunHandle:
        """Start a run and return its handle immediately."""
        self._ensure_initialized()
        return self._orchestrator.start_run(
            goal,
            conversation_id,
            user_id,
            runtime_kind=runtime_kind,
            planning_mode=planning_mode,
            tool_allowlist=tool_allowlist,
            history=history,
            loop_config=loop_config,
            on_delta=on_delta,
        )

    async def run(self, goal: str, conversation_id: str, user_id: str, **kwargs) -> RunResult:
        """Start a run and wait for its terminal result."""
        handle = await self.start_run(goal, conversation_id, user_id, **kwargs)
        return await handle.wait()

    async def stream(self, goal: str, conversation_id: str, user_id: str, **kwargs) -> AsyncIterator[RunMessage]:
        """
        Start a run and yield its messages until the terminal one.

        Example:
            async for message in app.stream("Run the test suite", "conv-1", "user-1"):
                ...
        """
        handle = await self.start_run(goal, conversation_id, user_id, **kwargs)
        async for message in handle.messages(include_history=True):
            yield message

    def cancel_run(self, run_id: str, reason: str = "cancelled by caller") -> bool:
        if self._orchestrator is None:
            return False
        return self._orchestrator.cancel_run(run_id, reason)

    async def shutdown(self) -> None:
        """Cancel active runs and drop the built components."""
        if self._orchestrator is None:
            return
        try:
            await self._orchestrator.shutdown()
            if self._llm_client is not None:
                await self._llm_client.close()
        finally:
            self._orchestrator = None
            self._registry = None
            self._channel = None
            self._llm_client = None
            logger.info("CodeAct shut down")
