"""
CodeAct Loop - ask for one action, execute it, record the observation, repeat

Each iteration:
1. Compose the request from the current task, memory and tool schemas
2. Stream a completion: a thought plus zero or one tool call
3. Validate and dispatch the call (runtime session or in-process executor)
4. Record (Action, Observation); update task status and the failure counter

Before every iteration the stopping checks run in a fixed order:
cancellation, all tasks succeeded, iteration bound, failure threshold.
"""

import logging
import time
from typing import Optional

from ..constants import FINISH_TOOL_NAME
from ..errors import (
    CancellationRequested,
    CompletionError,
    RuntimeUnavailable,
    ToolArgumentInvalid,
    ToolNotFound,
)
from ..llm.channel import CompletionChannel
from ..runtime.base import RuntimeAction
from ..streaming import MessageKind, MessageStatus, RunMessage
from ..tools.models import ToolExecutionContext, ToolResult
from ..tools.registry import ToolRegistry
from . import prompts
from .audit_logger import summarize_args
from .loop_config import LoopExit
from .memory import Action, Observation
from .models import RunContext
from .tracker import Task, TaskStatus

logger = logging.getLogger(__name__)

_TASK_MESSAGE_STATUS = {
    TaskStatus.PENDING: MessageStatus.PENDING,
    TaskStatus.ACTIVE: MessageStatus.PENDING,
    TaskStatus.SUCCESS: MessageStatus.SUCCESS,
    TaskStatus.ERROR: MessageStatus.ERROR,
}


async def emit_task_status(ctx: RunContext, task: Task) -> None:
    await ctx.emit(RunMessage(
        action_type=MessageKind.TASK_STATUS,
        status=_TASK_MESSAGE_STATUS[task.status],
        content=f"{task.id} {task.status.value}: {task.description}",
        payload=task.to_dict(),
        task_id=task.id,
        metadata={"task_status": task.status.value},
    ))


async def set_task_status(ctx: RunContext, task: Task, status: TaskStatus, result: Optional[str] = None) -> None:
    if ctx.plan.set_status(task.id, status, result=result):
        await emit_task_status(ctx, task)


class CodeActLoop:
    """
    Drives one run's EXECUTING phase until a stopping condition.

    The loop is stateless; everything it changes lives on the RunContext,
    so one loop instance serves any number of concurrent runs.
    """

    def __init__(self, channel: CompletionChannel, registry: ToolRegistry):
        self.channel = channel
        self.registry = registry

    async def run(self, ctx: RunContext) -> LoopExit:
        state = ctx.loop_state
        config = ctx.loop_config

        while True:
            if ctx.cancel.cancelled:
                state.exit_reason = ctx.cancel.reason
                return LoopExit.CANCELLED
            if ctx.plan.all_succeeded():
                return LoopExit.SUMMARIZE
            if state.iterations >= config.max_iterations:
                state.exit_reason = f"iteration limit of {config.max_iterations} reached"
                logger.warning(f"[CodeAct] run={ctx.run_id} {state.exit_reason}")
                return LoopExit.FAILED
            if state.consecutive_failures >= config.failure_threshold:
                state.exit_reason = f"{state.consecutive_failures} consecutive failures"
                return LoopExit.REFLECT

            task = ctx.plan.current_task
            if task is None:
                state.exit_reason = "no open tasks left but the plan did not succeed"
                return LoopExit.FAILED
            if task.status == TaskStatus.PENDING:
                await set_task_status(ctx, task, TaskStatus.ACTIVE)

            state.iterations += 1
            await self.step(ctx, task)

    async def step(self, ctx: RunContext, task: Task) -> None:
        """One iteration for ``task``."""
        state = ctx.loop_state
        schemas = self.registry.schemas(ctx.tool_names)
        messages = prompts.build_code_act_messages(
            ctx.goal,
            ctx.plan.render_markdown(),
            task.id,
            task.description,
            ctx.tool_names,
            ctx.memory.to_messages(),
        )

        try:
            proposal = await self.channel.request_action(
                messages, tools=schemas, sink=ctx.on_delta, cancel=ctx.cancel,
            )
        except CompletionError as e:
            await self._completion_failed(ctx, task, e)
            return

        if proposal.tool_call is None:
            logger.info(f"[CodeAct] run={ctx.run_id} {task.id} finished without a tool call")
            await set_task_status(ctx, task, TaskStatus.SUCCESS, result=proposal.thought)
            return

        action = Action(
            action_type=proposal.tool_call.name,
            arguments=dict(proposal.tool_call.arguments),
            task_id=task.id,
            thought=proposal.thought,
        )
        await ctx.emit(RunMessage(
            uuid=action.uuid,
            action_type=action.action_type,
            status=MessageStatus.PENDING,
            content=action.thought,
            payload={"arguments": action.arguments},
            task_id=task.id,
            metadata={"iteration": state.iterations},
        ))

        started = time.monotonic()
        try:
            result = await self._dispatch(ctx, action)
        except RuntimeUnavailable as e:
            # Fatal for the run, but the action still gets its observation
            await self._commit(ctx, action, ToolResult.error(
                f"Runtime unavailable: {e}", metadata={"error_type": "RuntimeUnavailable"},
            ), memorized=False, started=started)
            raise
        except CancellationRequested as e:
            await self._commit(ctx, action, ToolResult.error(
                f"Cancelled before {action.action_type} completed: {e}",
                metadata={"error_type": "CancellationRequested"},
            ), memorized=False, started=started)
            raise

        tool = self.registry.get_tool(action.action_type)
        observation = await self._commit(
            ctx, action, result, memorized=bool(tool and tool.memorized), started=started,
        )

        if observation.is_error:
            state.record_failure()
        else:
            state.record_success()
            if action.action_type == FINISH_TOOL_NAME or (observation.payload or {}).get("task_complete"):
                await set_task_status(ctx, task, TaskStatus.SUCCESS, result=observation.content)

    async def _dispatch(self, ctx: RunContext, action: Action) -> ToolResult:
        """Validate and execute; tool-level problems become error results."""
        name = action.action_type
        if name not in ctx.tool_names:
            return ToolResult.error(str(ToolNotFound(name)), metadata={"error_type": "ToolNotFound"})

        tool = self.registry.get_tool(name)
        if tool.requires_runtime:
            try:
                self.registry.validate(name, action.arguments)
            except (ToolNotFound, ToolArgumentInvalid) as e:
                return ToolResult.error(str(e), metadata={"error_type": type(e).__name__})
            runtime = await ctx.cancel.guard(ctx.ensure_runtime())
            return await ctx.cancel.guard(runtime.do_action(
                RuntimeAction(action_type=tool.runtime_action, arguments=action.arguments, uuid=action.uuid)
            ))

        context = ToolExecutionContext(
            run_id=ctx.run_id,
            conversation_id=ctx.conversation_id,
            user_id=ctx.user_id,
            workspace=ctx.workspace,
            runtime=ctx.runtime,
            metadata={"task_id": action.task_id},
        )
        return await ctx.cancel.guard(
            self.registry.dispatch(name, action.arguments, action.uuid, context)
        )

    async def _commit(
        self,
        ctx: RunContext,
        action: Action,
        result: ToolResult,
        memorized: bool,
        started: float,
    ) -> Observation:
        """Record the action's single observation and announce it."""
        observation = Observation.from_result(action, result)
        ctx.memory.record(action, observation, memorized=memorized)

        await ctx.emit(RunMessage(
            uuid=action.uuid,
            action_type=action.action_type,
            status=MessageStatus.ERROR if observation.is_error else MessageStatus.SUCCESS,
            content=observation.content,
            payload=observation.payload or {},
            task_id=action.task_id,
            metadata=observation.metadata,
            file_path=observation.file_path,
        ))

        state = ctx.loop_state
        ctx.audit.log_action(
            run_id=ctx.run_id,
            iteration=state.iterations,
            tool_name=action.action_type,
            args_summary=summarize_args(action.arguments),
            success=not observation.is_error,
            duration_ms=int((time.monotonic() - started) * 1000),
            consecutive_failures=state.consecutive_failures + (1 if observation.is_error else 0),
            error=observation.content if observation.is_error else None,
        )
        level = logging.WARNING if observation.is_error else logging.INFO
        logger.log(
            level,
            f"[CodeAct] run={ctx.run_id} iter={state.iterations} {action.action_type} "
            f"-> {observation.status.value}",
        )
        return observation

    async def _completion_failed(self, ctx: RunContext, task: Task, error: CompletionError) -> None:
        """An iteration whose completion could not be used counts as a failure."""
        state = ctx.loop_state
        state.record_failure()
        state.exit_reason = str(error)
        ctx.memory.add_note(prompts.render_format_error_note(str(error)), failure=str(error))
        await ctx.emit(RunMessage(
            action_type=MessageKind.COMPLETION_ERROR,
            status=MessageStatus.ERROR,
            content=f"Model output could not be used: {error}",
            task_id=task.id,
            metadata={
                "error_type": type(error).__name__,
                "iteration": state.iterations,
                "consecutive_failures": state.consecutive_failures,
            },
        ))
        logger.warning(f"[CodeAct] run={ctx.run_id} iter={state.iterations} completion failed: {error}")
