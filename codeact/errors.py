"""
CodeAct Errors - Exception taxonomy for the execution engine

Errors local to one action (tool or runtime failures) are converted into
error observations by the code-act loop. Errors that prevent a run from
establishing its preconditions (no plan, no runtime) are fatal.
"""

from typing import Any, Dict, Optional


class CodeActError(Exception):
    """Base class for all engine errors"""


class PlanningError(CodeActError):
    """No usable initial plan could be produced"""


class CompletionError(CodeActError):
    """A completion request failed"""


class CompletionFormatError(CompletionError):
    """Model output could not be parsed after all retries"""

    def __init__(self, message: str, attempts: int = 0, raw_content: str = ""):
        super().__init__(message)
        self.attempts = attempts
        self.raw_content = raw_content


class CompletionTimeout(CompletionError):
    """A single completion stream exceeded its timeout"""


class ToolError(CodeActError):
    """Base class for tool lookup and validation errors"""


class ToolNotFound(ToolError):
    """The requested tool is not in the registry"""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool '{name}'")
        self.name = name


class ToolArgumentInvalid(ToolError):
    """Tool arguments do not match the tool's parameter schema"""

    def __init__(self, name: str, errors: Any):
        super().__init__(f"Invalid arguments for tool '{name}': {errors}")
        self.name = name
        self.errors = errors


class ToolDefinitionError(ToolError):
    """A tool definition is malformed or conflicts with another"""


class RuntimeUnavailable(CodeActError):
    """No execution environment could be provisioned"""


class RuntimeActionError(CodeActError):
    """A runtime action or file operation failed"""

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.metadata = metadata or {}


class CancellationRequested(CodeActError):
    """Cooperative cancellation was observed at a suspension point"""


class InvalidTaskTransition(CodeActError, ValueError):
    """A task status change would regress or leave a terminal status"""


class InvalidStateTransition(CodeActError, ValueError):
    """A run state change that the orchestrator state machine does not allow"""
