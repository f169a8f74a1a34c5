"""Reflection: a corrective planning pass after repeated consecutive failures."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..cancellation import CancelToken
from ..errors import CompletionError
from ..llm.channel import CompletionChannel, DeltaSink
from . import prompts
from .memory import Note, Step
from .planning import task_descriptions
from .tracker import Plan

logger = logging.getLogger(__name__)


class ReflectionDecision(str, Enum):
    REVISE = "revise"
    STOP = "stop"


@dataclass
class ReflectionOutcome:
    decision: ReflectionDecision
    tasks: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def revises(self) -> bool:
        return self.decision == ReflectionDecision.REVISE and bool(self.tasks)


def _check_reflection_reply(obj: Dict[str, Any]) -> Optional[str]:
    decision = str(obj.get("decision", "")).lower()
    if decision not in (ReflectionDecision.REVISE.value, ReflectionDecision.STOP.value):
        return f"decision must be 'revise' or 'stop', got {obj.get('decision')!r}"
    if decision == ReflectionDecision.REVISE.value and task_descriptions(obj) is None:
        return "a 'revise' decision needs a non-empty 'tasks' list"
    return None


def describe_failures(entries: List[Union[Step, Note]]) -> List[Dict[str, Any]]:
    """Failed steps and unusable completions, in order, for the reflection prompt"""
    described = []
    for entry in entries:
        if isinstance(entry, Note):
            if entry.failure is not None:
                described.append({"tool": None, "arguments": {}, "error": entry.failure[:2000]})
        elif entry.observation.is_error:
            described.append({
                "tool": entry.action.action_type,
                "arguments": entry.action.arguments,
                "error": entry.observation.content[:2000],
            })
    return described


class ReflectionStrategy:
    """
    Asks the model whether to revise the plan or stop.

    Uses the same completion channel and retry policy as planning. When the
    model cannot produce a usable decision the outcome is ``stop``.
    """

    def __init__(self, channel: CompletionChannel):
        self.channel = channel

    async def reflect(
        self,
        goal: str,
        plan: Plan,
        failures: List[Union[Step, Note]],
        cancel: Optional[CancelToken] = None,
        sink: Optional[DeltaSink] = None,
    ) -> ReflectionOutcome:
        """
        Raises:
            CancellationRequested: The run was cancelled while reflecting
        """
        messages = prompts.build_reflection_messages(
            goal, plan.render_markdown(), describe_failures(failures),
        )
        try:
            reply = await self.channel.request_json(
                messages,
                sink=sink,
                cancel=cancel,
                validate=_check_reflection_reply,
                purpose="reflection",
            )
        except CompletionError as e:
            logger.warning(f"[Reflection] No usable decision, stopping: {e}")
            return ReflectionOutcome(
                decision=ReflectionDecision.STOP,
                reason=f"reflection failed: {e}",
            )

        decision = ReflectionDecision(str(reply["decision"]).lower())
        reason = str(reply.get("reason") or "").strip()
        tasks = []
        if decision == ReflectionDecision.REVISE:
            tasks = task_descriptions(reply) or []
        logger.info(f"[Reflection] decision={decision.value} new_tasks={len(tasks)} reason={reason[:120]}")
        return ReflectionOutcome(decision=decision, tasks=tasks, reason=reason)
