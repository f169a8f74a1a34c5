"""
CodeAct Orchestrator Models - Run state machine and per-run context

This module defines:
- RunState: Orchestrator states and the transitions allowed between them
- RunContext: Everything one run carries through its suspension points
- RunResult: Terminal outcome of a run
- RunHandle: Caller-side handle returned by start_run
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..cancellation import CancelToken
from ..errors import InvalidStateTransition
from ..llm.channel import DeltaSink
from ..runtime.base import RuntimeSession, RuntimeSpec
from ..streaming import MessageStream, RunMessage
from .audit_logger import AuditLogger
from .loop_config import LoopConfig, LoopState
from .memory import Memory
from .tracker import Plan

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    PLANNING = "planning"
    EXECUTING = "executing"
    REFLECTING = "reflecting"
    SUMMARIZING = "summarizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED, RunState.CANCELLED)


LEGAL_TRANSITIONS: Dict[RunState, frozenset] = {
    RunState.INIT: frozenset({RunState.PLANNING, RunState.FAILED, RunState.CANCELLED}),
    RunState.PLANNING: frozenset({RunState.EXECUTING, RunState.FAILED, RunState.CANCELLED}),
    RunState.EXECUTING: frozenset({
        RunState.SUMMARIZING, RunState.REFLECTING, RunState.FAILED, RunState.CANCELLED,
    }),
    RunState.REFLECTING: frozenset({RunState.EXECUTING, RunState.FAILED, RunState.CANCELLED}),
    RunState.SUMMARIZING: frozenset({RunState.DONE, RunState.FAILED, RunState.CANCELLED}),
    RunState.DONE: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.CANCELLED: frozenset(),
}


RuntimeFactory = Callable[[str, RuntimeSpec], RuntimeSession]


@dataclass
class RunResult:
    """Terminal outcome of a run"""
    run_id: str
    state: RunState
    summary: str = ""
    error: Optional[str] = None
    iterations: int = 0
    actions: int = 0
    plan: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "summary": self.summary,
            "error": self.error,
            "iterations": self.iterations,
            "actions": self.actions,
            "plan": self.plan,
        }


@dataclass
class RunContext:
    """
    Per-run state passed through every step.

    Nothing in here is shared with other runs: each run has its own plan,
    memory, cancel token, message stream and (lazily) its own runtime session.
    """
    goal: str
    conversation_id: str
    user_id: str
    runtime_kind: str
    planning_mode: str
    tool_names: List[str]
    runtime_spec: RuntimeSpec
    runtime_factory: RuntimeFactory
    stream: MessageStream
    loop_config: LoopConfig
    history: List[Dict[str, str]] = field(default_factory=list)
    on_delta: Optional[DeltaSink] = None
    audit: AuditLogger = field(default_factory=AuditLogger)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancel: CancelToken = field(default_factory=CancelToken)
    plan: Plan = field(default_factory=Plan)
    memory: Memory = field(default_factory=Memory)
    loop_state: LoopState = field(default_factory=LoopState)
    state: RunState = RunState.INIT
    runtime: Optional[RuntimeSession] = None
    summary: str = ""
    error: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)
    _runtime_released: bool = False

    def transition(self, new_state: RunState, reason: Optional[str] = None) -> None:
        """
        Move the run to a new state.

        Raises:
            InvalidStateTransition: The state machine does not allow the move
        """
        if new_state not in LEGAL_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Run {self.run_id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        previous = self.state
        self.state = new_state
        self.audit.log_state_transition(self.run_id, previous.value, new_state.value, reason)
        logger.info(f"[CodeAct] run={self.run_id} {previous.value} -> {new_state.value}")

    @property
    def workspace(self) -> str:
        return str(self.runtime_spec.workspace)

    async def ensure_runtime(self) -> RuntimeSession:
        """
        Create and connect the run's runtime session on first use.

        Raises:
            RuntimeUnavailable: Provisioning failed
        """
        if self.runtime is None:
            self.runtime = self.runtime_factory(self.runtime_kind, self.runtime_spec)
        if not self.runtime.connected:
            await self.runtime.connect()
        return self.runtime

    async def release_runtime(self) -> None:
        """Release the runtime session; only the first call has any effect."""
        if self._runtime_released:
            return
        self._runtime_released = True
        if self.runtime is not None:
            await self.runtime.release()

    async def emit(self, message: RunMessage) -> None:
        await self.stream.emit(message)

    def result(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            state=self.state,
            summary=self.summary,
            error=self.error,
            iterations=self.loop_state.iterations,
            actions=len(self.memory.steps),
            plan=self.plan.to_list(),
        )


class RunHandle:
    """
    Caller-side handle for one run.

    Example:
        handle = orchestrator.start_run("Build a CLI that ...", "conv-1", "user-1")
        async for message in handle.messages():
            print(message.action_type, message.status.value, message.content[:80])
        result = await handle.wait()
    """

    def __init__(self, context: RunContext, task: "asyncio.Task[RunResult]"):
        self._context = context
        self._task = task

    @property
    def run_id(self) -> str:
        return self._context.run_id

    @property
    def conversation_id(self) -> str:
        return self._context.conversation_id

    @property
    def user_id(self) -> str:
        return self._context.user_id

    @property
    def state(self) -> RunState:
        return self._context.state

    @property
    def plan(self) -> Plan:
        return self._context.plan

    @property
    def memory(self) -> Memory:
        return self._context.memory

    @property
    def stream(self) -> MessageStream:
        return self._context.stream

    @property
    def done(self) -> bool:
        return self._task.done()

    def messages(self, include_history: bool = True) -> AsyncIterator[RunMessage]:
        """Iterate over the run's messages until the terminal one"""
        return self._context.stream.subscribe(include_history=include_history)

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cooperative cancellation"""
        self._context.cancel.cancel(reason)

    async def wait(self) -> RunResult:
        return await asyncio.shield(self._task)

    def __repr__(self) -> str:
        return f"<RunHandle {self.run_id} {self.state.value}>"
