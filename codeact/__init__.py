"""
CodeAct - An autonomous code-act execution engine

Given a natural-language goal, CodeAct plans a short task list, then drives
a language model through a loop of one action per iteration (run a command,
write or read a file, call a registered tool) inside a sandboxed workspace,
recording every action and its observation, reflecting on repeated failures,
and finishing with a summary.

Key Features:
- Streaming completions via litellm or raw OpenAI-compatible SSE (httpx)
- Declarative tools (@tool) with schema validation, plus MCP server tools
- Local process, docker and remote managed-container runtimes
- Monotone task tracking, bounded iterations and failure-triggered reflection
- Ordered per-run message streams with cooperative cancellation

Quick Start:
    from codeact import CodeActApp

    app = CodeActApp("codeact.yaml")
    handle = await app.start_run("Write hello.py and run it", "conv-1", "user-1")
    async for message in handle.messages():
        print(message.action_type, message.status.value, message.content[:80])
    result = await handle.wait()

Custom tools:
    from codeact import tool

    @tool()
    async def lookup_ticket(ticket_id: str) -> str:
        '''Fetch a ticket from the tracker.

        Args:
            ticket_id: Ticket identifier
        '''
        ...
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    CodeActError,
    PlanningError,
    CompletionError,
    CompletionFormatError,
    CompletionTimeout,
    ToolError,
    ToolNotFound,
    ToolArgumentInvalid,
    ToolDefinitionError,
    RuntimeUnavailable,
    RuntimeActionError,
    CancellationRequested,
    InvalidTaskTransition,
    InvalidStateTransition,
)
from .cancellation import CancelToken

# Configuration
from .config import EngineConfig, load_config

# Tools
from .tools import (
    ToolDefinition,
    ToolRegistry,
    ToolResult,
    ToolStatus,
    ToolExecutionContext,
    builtin_tools,
    tool,
)

# LLM
from .llm import (
    CompletionChannel,
    LiteLLMClient,
    LLMConfig,
    SSEStreamClient,
    TokenDelta,
    create_llm_client,
)

# Runtime
from .runtime import (
    RuntimeAction,
    RuntimeSession,
    RuntimeSpec,
    LocalRuntime,
    DockerRuntime,
    RemoteRuntime,
    PortAllocator,
    create_runtime,
)

# Streaming
from .streaming import MessageKind, MessageStatus, MessageStream, RunMessage

# Orchestrator
from .orchestrator import (
    LoopConfig,
    Orchestrator,
    Plan,
    PlanningMode,
    RunHandle,
    RunResult,
    RunState,
    Task,
    TaskStatus,
)

# Application Entry Point
from .app import CodeActApp

__all__ = [
    "__version__",
    # Errors
    "CodeActError",
    "PlanningError",
    "CompletionError",
    "CompletionFormatError",
    "CompletionTimeout",
    "ToolError",
    "ToolNotFound",
    "ToolArgumentInvalid",
    "ToolDefinitionError",
    "RuntimeUnavailable",
    "RuntimeActionError",
    "CancellationRequested",
    "InvalidTaskTransition",
    "InvalidStateTransition",
    "CancelToken",
    # Configuration
    "EngineConfig",
    "load_config",
    # Tools
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "ToolStatus",
    "ToolExecutionContext",
    "builtin_tools",
    "tool",
    # LLM
    "CompletionChannel",
    "LiteLLMClient",
    "LLMConfig",
    "SSEStreamClient",
    "TokenDelta",
    "create_llm_client",
    # Runtime
    "RuntimeAction",
    "RuntimeSession",
    "RuntimeSpec",
    "LocalRuntime",
    "DockerRuntime",
    "RemoteRuntime",
    "PortAllocator",
    "create_runtime",
    # Streaming
    "MessageKind",
    "MessageStatus",
    "MessageStream",
    "RunMessage",
    # Orchestrator
    "LoopConfig",
    "Orchestrator",
    "Plan",
    "PlanningMode",
    "RunHandle",
    "RunResult",
    "RunState",
    "Task",
    "TaskStatus",
    # Application
    "CodeActApp",
]
