"""
Built-in tools available to every run.

Runtime-backed tools carry a ``runtime_action`` and are executed by the run's
RuntimeSession; ``finish`` is executed in-process and tells the loop the
current task is done.
"""

from typing import Any, Dict, List

from ..constants import (
    ACTION_READ_FILE,
    ACTION_RUN_COMMAND,
    ACTION_WRITE_FILE,
    FINISH_SCHEMA,
    FINISH_TOOL_NAME,
)
from .models import ToolCategory, ToolDefinition, ToolExecutionContext, ToolResult


async def _finish_executor(args: Dict[str, Any], context: ToolExecutionContext) -> ToolResult:
    return ToolResult.success(args.get("result", ""), data={"task_complete": True})


RUN_COMMAND = ToolDefinition(
    name=ACTION_RUN_COMMAND,
    description=(
        "Run a shell command inside the sandboxed workspace and return its exit code, "
        "stdout and stderr. Use it to install packages, run scripts and inspect files."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to execute"},
            "cwd": {
                "type": "string",
                "description": "Working directory relative to the workspace root",
            },
        },
        "required": ["command"],
    },
    runtime_action=ACTION_RUN_COMMAND,
    category=ToolCategory.RUNTIME,
)

WRITE_FILE = ToolDefinition(
    name=ACTION_WRITE_FILE,
    description="Create or overwrite a file in the workspace with the given content.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the workspace root"},
            "content": {"type": "string", "description": "Full file content"},
        },
        "required": ["path", "content"],
    },
    runtime_action=ACTION_WRITE_FILE,
    category=ToolCategory.RUNTIME,
)

READ_FILE = ToolDefinition(
    name=ACTION_READ_FILE,
    description="Read a text file from the workspace.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the workspace root"},
        },
        "required": ["path"],
    },
    memorized=True,
    runtime_action=ACTION_READ_FILE,
    category=ToolCategory.RUNTIME,
)

FINISH = ToolDefinition(
    name=FINISH_TOOL_NAME,
    description=(
        "Signal that the current task is complete and report the outcome. "
        "Call it once all work for the current task is done."
    ),
    parameters=FINISH_SCHEMA,
    executor=_finish_executor,
    category=ToolCategory.UTILITY,
)


def builtin_tools() -> List[ToolDefinition]:
    return [RUN_COMMAND, WRITE_FILE, READ_FILE, FINISH]
