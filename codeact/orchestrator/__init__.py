"""
CodeAct Orchestrator - Planning, the code-act loop, reflection and run lifecycle

Provides:
- Orchestrator: start, observe and cancel runs
- CodeActLoop: one action per iteration until a stopping condition
- Plan / Task / ExecutionLog: monotone task tracking
- Memory / Action / Observation: ordered run history
- PlanningStrategy / ReflectionStrategy

Usage:
    from codeact.orchestrator import Orchestrator, LoopConfig

    orchestrator = Orchestrator(channel, registry, config)
    handle = orchestrator.start_run(goal, "conv-1", "user-1", loop_config=LoopConfig(max_iterations=10))
    result = await handle.wait()
"""

from .tracker import ExecutionLog, LogEntry, Plan, Task, TaskStatus
from .memory import Action, Memory, Note, Observation, Step, Turn
from .loop_config import LoopConfig, LoopExit, LoopState
from .audit_logger import AuditLogger, summarize_args
from .models import LEGAL_TRANSITIONS, RunContext, RunHandle, RunResult, RunState, RuntimeFactory
from .planning import MAX_PLAN_TASKS, PlanningMode, PlanningStrategy, task_descriptions
from .reflection import ReflectionDecision, ReflectionOutcome, ReflectionStrategy, describe_failures
from .code_act import CodeActLoop
from .orchestrator import Orchestrator

__all__ = [
    # Tracking
    "ExecutionLog",
    "LogEntry",
    "Plan",
    "Task",
    "TaskStatus",
    # Memory
    "Action",
    "Memory",
    "Note",
    "Observation",
    "Step",
    "Turn",
    # Loop
    "LoopConfig",
    "LoopExit",
    "LoopState",
    "CodeActLoop",
    # Lifecycle
    "AuditLogger",
    "summarize_args",
    "LEGAL_TRANSITIONS",
    "RunContext",
    "RunHandle",
    "RunResult",
    "RunState",
    "RuntimeFactory",
    "Orchestrator",
    # Planning
    "MAX_PLAN_TASKS",
    "PlanningMode",
    "PlanningStrategy",
    "task_descriptions",
    "ReflectionDecision",
    "ReflectionOutcome",
    "ReflectionStrategy",
    "describe_failures",
]
