"""
CodeAct Tool Models - Data structures for the tool system
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Any, Optional, TYPE_CHECKING
from enum import Enum

if TYPE_CHECKING:
    from ..runtime.base import RuntimeSession


class ToolCategory(str, Enum):
    """Tool categories for organization"""
    RUNTIME = "runtime"
    UTILITY = "utility"
    WEB = "web"
    MCP = "mcp"
    CUSTOM = "custom"


class ToolStatus(str, Enum):
    """Normalized outcome of a tool execution"""
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ToolDefinition:
    """
    Definition of a tool that can be called by the model

    Attributes:
        name: Unique tool identifier (e.g., "run_command")
        description: What the tool does (shown to the model)
        parameters: JSON Schema for parameters
        executor: Async (or sync) callable ``executor(args, context)``
        memorized: Keep the full result in memory across iterations
        runtime_action: When set, the call is dispatched to the run's
            RuntimeSession as this action type instead of ``executor``
        category: Tool category for organization

    Example:
        async def search_web(args: dict, context: ToolExecutionContext) -> dict:
            return {"results": [...]}

        tool = ToolDefinition(
            name="search_web",
            description="Search the web for information",
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"}
                },
                "required": ["query"]
            },
            executor=search_web,
            memorized=True,
            category=ToolCategory.WEB
        )
    """
    name: str
    description: str
    parameters: Dict[str, Any]
    executor: Optional[Callable] = None
    memorized: bool = False
    runtime_action: Optional[str] = None
    category: ToolCategory = ToolCategory.UTILITY

    @property
    def requires_runtime(self) -> bool:
        return self.runtime_action is not None

    def to_openai_schema(self) -> Dict[str, Any]:
        """Convert to OpenAI function calling format"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


@dataclass
class ToolResult:
    """
    Result of a tool execution

    Attributes:
        status: success or error
        content: Human-readable result text
        metadata: Always carries action_type (the tool name) and correlation_id
        data: Optional structured payload for further processing
        file_path: Workspace file the result refers to, if any
    """
    status: ToolStatus
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None
    file_path: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status == ToolStatus.ERROR

    @classmethod
    def success(cls, content: str, **kwargs) -> "ToolResult":
        return cls(status=ToolStatus.SUCCESS, content=content, **kwargs)

    @classmethod
    def error(cls, content: str, **kwargs) -> "ToolResult":
        return cls(status=ToolStatus.ERROR, content=content, **kwargs)


@dataclass
class ToolExecutionContext:
    """
    Context passed to tool executors

    Contains the identity of the run and, for runtime-backed tools, the
    run's live RuntimeSession.
    """
    run_id: str
    conversation_id: str
    user_id: str
    workspace: Optional[str] = None
    runtime: Optional["RuntimeSession"] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from metadata"""
        return self.metadata.get(key, default)
