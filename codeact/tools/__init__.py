"""
CodeAct Tools - Tool registry and tool calling contract

Provides:
- ToolDefinition: Define tools with schemas
- ToolRegistry: Validate, register and dispatch tools
- @tool decorator: Build tool definitions from type hints
- Built-in runtime tools (run_command, write_file, read_file) and finish

Usage:
    from codeact.tools import ToolRegistry, builtin_tools

    registry = ToolRegistry()
    registry.load(builtin_tools())
    registry.freeze()
"""

from .models import (
    ToolCategory,
    ToolDefinition,
    ToolResult,
    ToolStatus,
    ToolExecutionContext,
)
from .registry import ToolRegistry, normalize_result, validate_definition
from .builtin import builtin_tools
from .decorator import (
    tool,
    get_tool_definition,
    ToolDiscovery,
)

__all__ = [
    # Models
    "ToolCategory",
    "ToolDefinition",
    "ToolResult",
    "ToolStatus",
    "ToolExecutionContext",
    # Registry
    "ToolRegistry",
    "normalize_result",
    "validate_definition",
    "builtin_tools",
    # Decorator
    "tool",
    "get_tool_definition",
    "ToolDiscovery",
]
