"""
JSON audit trail for runs.

Every decision the engine makes (state changes, actions, reflection
verdicts, run start and end) is written as one JSON object per record on
the ``codeact.audit`` logger, so it can be routed to its own handler
independently of the diagnostic logs::

    logging.getLogger("codeact.audit").addHandler(logging.FileHandler("audit.jsonl"))
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

_audit_logger = logging.getLogger("codeact.audit")

# Free text from goals and tool errors is clipped to keep records bounded
MAX_TEXT = 500


def _clip(text: Optional[str]) -> Optional[str]:
    return None if text is None else text[:MAX_TEXT]


class AuditLogger:
    """Writes one audit record per engine decision."""

    def __init__(self, conversation_id: Optional[str] = None) -> None:
        self.conversation_id = conversation_id

    def _write(self, event_type: str, run_id: str, **fields: Any) -> None:
        record: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "run_id": run_id,
        }
        # Optional fields are left out rather than written as null
        record.update((k, v) for k, v in fields.items() if v is not None)
        _audit_logger.info(json.dumps(record, default=str))

    def log_run_started(
        self,
        run_id: str,
        goal: str,
        runtime_kind: str,
        planning_mode: str,
        tools: List[str],
        conversation_id: Optional[str] = None,
    ) -> None:
        self._write(
            "run_started",
            run_id,
            conversation_id=conversation_id or self.conversation_id or "",
            goal=_clip(goal),
            runtime_kind=runtime_kind,
            planning_mode=planning_mode,
            tools_count=len(tools),
        )

    def log_state_transition(self, run_id: str, from_state: str, to_state: str, reason: Optional[str] = None) -> None:
        self._write("state_transition", run_id, from_state=from_state, to_state=to_state, reason=reason or None)

    def log_action(
        self,
        run_id: str,
        iteration: int,
        tool_name: str,
        args_summary: Dict[str, Any],
        success: bool,
        duration_ms: int,
        consecutive_failures: int,
        error: Optional[str] = None,
    ) -> None:
        """One tool call together with the outcome of its observation."""
        self._write(
            "action",
            run_id,
            iteration=iteration,
            tool_name=tool_name,
            args_summary=args_summary,
            success=success,
            duration_ms=duration_ms,
            consecutive_failures=consecutive_failures,
            error=_clip(error),
        )

    def log_reflection(self, run_id: str, decision: str, new_tasks: int, reason: str) -> None:
        self._write("reflection", run_id, decision=decision, new_tasks=new_tasks, reason=reason)

    def log_run_finished(
        self,
        run_id: str,
        state: str,
        iterations: int,
        actions: int,
        duration_ms: int,
        error: Optional[str] = None,
    ) -> None:
        self._write(
            "run_finished",
            run_id,
            state=state,
            iterations=iterations,
            actions=actions,
            duration_ms=duration_ms,
            error=error,
        )


def summarize_args(arguments: Dict[str, Any], limit: int = 200) -> Dict[str, Any]:
    """Flatten tool arguments to short strings for the audit record"""
    summary = {}
    for key, value in arguments.items():
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        if len(text) > limit:
            text = text[:limit] + "..."
        summary[key] = text
    return summary
