"""
Shared constants for the CodeAct engine.

Centralizes values that are needed by the loop, the tool registry and the
runtime backends to avoid circular imports and duplication.
"""

from typing import Any, Dict, Tuple

# ── Loop defaults ──
DEFAULT_MAX_ITERATIONS = 25
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COMPLETION_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.5

# ── Timeouts (seconds) ──
DEFAULT_PROVISION_TIMEOUT = 120.0
DEFAULT_COMPLETION_TIMEOUT = 300.0
DEFAULT_ACTION_TIMEOUT = 600.0

# ── Runtime action types ──
ACTION_RUN_COMMAND = "run_command"
ACTION_WRITE_FILE = "write_file"
ACTION_READ_FILE = "read_file"
RUNTIME_ACTIONS: Tuple[str, ...] = (ACTION_RUN_COMMAND, ACTION_WRITE_FILE, ACTION_READ_FILE)

# ── Port blocks ──
EXECUTION_PORT_BASE = 30000
INSPECTION_PORT_BASE = 40000
APP_PORT_BASE = 50000
APP_PORT_SPAN = 10
MAX_RUNTIME_SESSIONS = 500

# Output beyond this is cut before it reaches memory
MAX_OBSERVATION_CHARS = 20_000

FINISH_TOOL_NAME = "finish"

FINISH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "result": {
            "type": "string",
            "description": (
                "Short description of what was accomplished for the current task. "
                "Call this only when the current task is fully done."
            ),
        },
    },
    "required": ["result"],
}
