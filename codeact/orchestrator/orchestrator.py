"""
CodeAct Orchestrator - Drives runs through the state machine

    INIT -> PLANNING -> EXECUTING <-> REFLECTING
                            |
                            v
                       SUMMARIZING -> DONE

Any non-terminal state can end in FAILED or CANCELLED. Every terminal path
releases the runtime session exactly once, emits one ``run_end`` message and
closes the run's message stream.

Runs are independent asyncio tasks: each has its own plan, memory, cancel
token, message stream and runtime session. The completion channel and the
frozen tool registry are shared.

Example:
    orchestrator = Orchestrator(channel, registry, config)
    handle = orchestrator.start_run("Write a script that ...", "conv-1", "user-1")
    async for message in handle.messages():
        print(message.action_type, message.status.value)
    result = await handle.wait()
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from ..config.loader import EngineConfig, TimeoutSettings
from ..errors import CancellationRequested, CompletionError, PlanningError, RuntimeUnavailable
from ..llm.channel import CompletionChannel, DeltaSink
from ..protocols import MessageSink
from ..runtime.base import RuntimeSpec
from ..runtime.factory import RUNTIME_KINDS, create_runtime
from ..runtime.ports import PortAllocator
from ..streaming import MessageKind, MessageStatus, MessageStream, RunMessage
from ..tools.registry import ToolRegistry
from . import prompts
from .audit_logger import AuditLogger
from .code_act import CodeActLoop, emit_task_status
from .loop_config import LoopConfig, LoopExit
from .memory import Memory
from .models import RunContext, RunHandle, RunResult, RunState, RuntimeFactory
from .planning import PlanningMode, PlanningStrategy
from .reflection import ReflectionStrategy

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Entry point for starting, observing and cancelling runs.

    Args:
        channel: Completion channel shared by every run
        registry: Tool registry; frozen on construction
        config: Engine configuration (defaults when omitted)
        runtime_factory: ``(kind, spec) -> RuntimeSession``; defaults to the
            configured backends sharing one port allocator
        planner: Planning strategy; defaults to one built from ``config.planning``
        sink: Persistence sink for run messages
        audit: Structured audit logger
    """

    def __init__(
        self,
        channel: CompletionChannel,
        registry: ToolRegistry,
        config: Optional[EngineConfig] = None,
        runtime_factory: Optional[RuntimeFactory] = None,
        planner: Optional[PlanningStrategy] = None,
        sink: Optional[MessageSink] = None,
        audit: Optional[AuditLogger] = None,
    ):
        if channel is None:
            raise ValueError("channel is required")
        self.channel = channel
        self.registry = registry
        self.config = config or EngineConfig()
        self.sink = sink
        self._audit = audit or AuditLogger()

        if not registry.frozen:
            registry.freeze()

        self._runtime_factory = runtime_factory
        ports = self.config.runtime.ports
        self._ports = PortAllocator(
            execution_base=ports.execution_base,
            inspection_base=ports.inspection_base,
            app_base=ports.app_base,
            app_span=ports.app_span,
            max_sessions=ports.max_sessions,
        )
        self.planner = planner or PlanningStrategy(
            channel=channel,
            server_url=self.config.planning.server_url,
            retries=self.config.loop.completion_retries,
            retry_delay=self.config.loop.retry_delay,
        )

        self._runs: Dict[str, RunHandle] = {}

    # ==========================================================================
    # PUBLIC API
    # ==========================================================================

    def start_run(
        self,
        goal: str,
        conversation_id: str,
        user_id: str,
        runtime_kind: Optional[str] = None,
        planning_mode: Optional[str] = None,
        tool_allowlist: Optional[List[str]] = None,
        history: Optional[List[Dict[str, str]]] = None,
        loop_config: Optional[LoopConfig] = None,
        on_delta: Optional[DeltaSink] = None,
    ) -> RunHandle:
        """
        Start a run as an independent asyncio task.

        Must be called from within a running event loop.

        A conversation owns one workspace, container and port block, so
        it can have only one live run at a time.

        Raises:
            ValueError: Unknown runtime kind or planning mode, unsafe ids, or
                the conversation already has a run in progress
        """
        runtime_kind = runtime_kind or self.config.runtime.kind
        if runtime_kind not in RUNTIME_KINDS:
            raise ValueError(f"Unknown runtime kind '{runtime_kind}', expected one of {RUNTIME_KINDS}")
        mode = PlanningMode(planning_mode or self.config.planning.mode)
        loop_config = loop_config or LoopConfig.from_config(self.config)
        if tool_allowlist is None:
            tool_allowlist = self.config.tools.allowlist

        spec = RuntimeSpec(
            user_id=user_id,
            conversation_id=conversation_id,
            workspace_root=self.config.runtime.workspace_root,
        )
        busy = self.active_run(user_id, conversation_id)
        if busy is not None:
            raise ValueError(
                f"Conversation {user_id}/{conversation_id} already has run {busy.run_id} in progress"
            )

        ctx = RunContext(
            goal=goal,
            conversation_id=conversation_id,
            user_id=user_id,
            runtime_kind=runtime_kind,
            planning_mode=mode.value,
            tool_names=self.registry.resolve_allowlist(tool_allowlist),
            runtime_spec=spec,
            runtime_factory=self._runtime_factory or self._default_runtime_factory(loop_config),
            stream=MessageStream(conversation_id=conversation_id, sink=self.sink),
            loop_config=loop_config,
            history=list(history or []),
            memory=Memory(history),
            on_delta=on_delta,
            audit=self._audit,
        )
        ctx.stream.run_id = ctx.run_id

        task = asyncio.create_task(self._execute(ctx), name=f"codeact-run-{ctx.run_id}")
        handle = RunHandle(ctx, task)
        self._runs[ctx.run_id] = handle
        logger.info(
            f"[CodeAct] Started run={ctx.run_id} conversation={conversation_id} "
            f"runtime={runtime_kind} planning={mode.value} tools={len(ctx.tool_names)}"
        )
        return handle

    def get_run(self, run_id: str) -> Optional[RunHandle]:
        return self._runs.get(run_id)

    def active_run(self, user_id: str, conversation_id: str) -> Optional[RunHandle]:
        """The unfinished run for this conversation, if any."""
        for handle in self._runs.values():
            if not handle.done and handle.user_id == user_id and handle.conversation_id == conversation_id:
                return handle
        return None

    def list_runs(self, active_only: bool = False) -> List[RunHandle]:
        handles = list(self._runs.values())
        if active_only:
            handles = [h for h in handles if not h.done]
        return handles

    def cancel_run(self, run_id: str, reason: str = "cancelled by caller") -> bool:
        """Request cancellation; returns False for unknown or finished runs."""
        handle = self._runs.get(run_id)
        if handle is None or handle.done:
            return False
        handle.cancel(reason)
        return True

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel every active run and wait for them to clean up."""
        active = self.list_runs(active_only=True)
        for handle in active:
            handle.cancel("orchestrator shutdown")
        if active:
            done, pending = await asyncio.wait([h._task for h in active], timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info(f"Orchestrator shutdown ({len(active)} active run(s) cancelled)")

    # ==========================================================================
    # RUN LIFECYCLE
    # ==========================================================================

    def _default_runtime_factory(self, loop_config: LoopConfig) -> RuntimeFactory:
        timeouts = TimeoutSettings(
            provision=loop_config.provision_timeout,
            completion=loop_config.completion_timeout,
            action=loop_config.action_timeout,
        )
        settings = self.config.runtime

        def factory(kind: str, spec: RuntimeSpec):
            return create_runtime(kind, spec, settings=settings, timeouts=timeouts, ports=self._ports)

        return factory

    def _channel_for(self, loop_config: LoopConfig) -> CompletionChannel:
        """The shared channel, or a per-run one when the run overrides its retry policy"""
        channel = self.channel
        if (
            channel.completion_retries == loop_config.completion_retries
            and channel.retry_delay == loop_config.retry_delay
            and channel.stream_timeout == loop_config.completion_timeout
        ):
            return channel
        return CompletionChannel(
            channel.client,
            completion_retries=loop_config.completion_retries,
            retry_delay=loop_config.retry_delay,
            stream_timeout=loop_config.completion_timeout,
        )

    async def _execute(self, ctx: RunContext) -> RunResult:
        channel = self._channel_for(ctx.loop_config)
        loop = CodeActLoop(channel, self.registry)
        reflection = ReflectionStrategy(channel)

        ctx.audit.log_run_started(
            run_id=ctx.run_id,
            goal=ctx.goal,
            runtime_kind=ctx.runtime_kind,
            planning_mode=ctx.planning_mode,
            tools=ctx.tool_names,
            conversation_id=ctx.conversation_id,
        )
        interrupted = False
        try:
            await self._plan(ctx)
            ctx.transition(RunState.EXECUTING)

            while not ctx.state.is_terminal:
                exit_reason = await loop.run(ctx)

                if exit_reason == LoopExit.CANCELLED:
                    raise CancellationRequested(ctx.cancel.reason or "cancelled")

                if exit_reason == LoopExit.REFLECT:
                    ctx.transition(RunState.REFLECTING, ctx.loop_state.exit_reason)
                    if await self._reflect(ctx, reflection):
                        ctx.transition(RunState.EXECUTING, "plan revised")
                    else:
                        await self._fail(ctx, ctx.error or "reflection decided to stop")

                elif exit_reason == LoopExit.FAILED:
                    await self._fail(ctx, ctx.loop_state.exit_reason or "run failed")

                else:
                    ctx.transition(RunState.SUMMARIZING)
                    await self._summarize(ctx, channel)
                    ctx.transition(RunState.DONE)

        except CancellationRequested as e:
            self._mark_cancelled(ctx, str(e))
        except asyncio.CancelledError:
            self._mark_cancelled(ctx, ctx.cancel.reason or "run task cancelled")
            interrupted = True
        except (PlanningError, RuntimeUnavailable) as e:
            await self._fail(ctx, f"{type(e).__name__}: {e}", error_type=type(e).__name__)
        except Exception as e:
            logger.error(f"[CodeAct] run={ctx.run_id} crashed: {e}", exc_info=True)
            await self._fail(ctx, f"{type(e).__name__}: {e}", error_type=type(e).__name__)
        finally:
            await self._finish(ctx)

        if interrupted:
            raise asyncio.CancelledError()
        return ctx.result()

    async def _plan(self, ctx: RunContext) -> None:
        ctx.transition(RunState.PLANNING)
        ctx.plan = await self.planner.plan(
            ctx.goal,
            ctx.history,
            PlanningMode(ctx.planning_mode),
            cancel=ctx.cancel,
            sink=ctx.on_delta,
        )
        await ctx.emit(RunMessage(
            action_type=MessageKind.PLAN,
            status=MessageStatus.SUCCESS,
            content=ctx.plan.render_markdown(),
            payload={"tasks": ctx.plan.to_list(), "mode": ctx.planning_mode},
        ))

    async def _reflect(self, ctx: RunContext, reflection: ReflectionStrategy) -> bool:
        """Run one reflection pass; True when the plan was revised."""
        config = ctx.loop_config
        failures = ctx.memory.recent_failures(config.failure_threshold)
        outcome = await reflection.reflect(
            ctx.goal, ctx.plan, failures, cancel=ctx.cancel, sink=ctx.on_delta,
        )
        ctx.loop_state.reflections += 1
        ctx.audit.log_reflection(
            run_id=ctx.run_id,
            decision=outcome.decision.value,
            new_tasks=len(outcome.tasks),
            reason=outcome.reason,
        )

        if not outcome.revises:
            ctx.error = f"reflection decided to stop: {outcome.reason or 'no reason given'}"
            await ctx.emit(RunMessage(
                action_type=MessageKind.REFLECTION,
                status=MessageStatus.ERROR,
                content=ctx.error,
                payload={"decision": outcome.decision.value, "tasks": []},
            ))
            return False

        for task in ctx.plan.supersede_open_tasks(f"superseded by reflection: {outcome.reason}"):
            await emit_task_status(ctx, task)
        added = ctx.plan.add_tasks(outcome.tasks, source="reflection")
        ctx.memory.add_note(prompts.render_reflection_note(outcome.reason, outcome.tasks))
        ctx.loop_state.consecutive_failures = 0

        await ctx.emit(RunMessage(
            action_type=MessageKind.REFLECTION,
            status=MessageStatus.SUCCESS,
            content=ctx.plan.render_markdown(),
            payload={
                "decision": outcome.decision.value,
                "reason": outcome.reason,
                "tasks": [t.to_dict() for t in added],
            },
        ))
        logger.info(f"[Reflection] run={ctx.run_id} revised plan with {len(added)} new task(s)")
        return True

    async def _summarize(self, ctx: RunContext, channel: CompletionChannel) -> None:
        plan_md = ctx.plan.render_markdown()
        summary = plan_md
        if ctx.loop_config.summarize:
            digest = [
                f"{s.action.action_type} ({s.observation.status.value}): {s.observation.content[:200]}"
                for s in ctx.memory.steps
            ]
            try:
                completion = await channel.request_text(
                    prompts.build_summary_messages(ctx.goal, plan_md, digest),
                    sink=ctx.on_delta,
                    cancel=ctx.cancel,
                )
                summary = completion.content.strip() or plan_md
            except CompletionError as e:
                logger.warning(f"[CodeAct] run={ctx.run_id} summary failed, using plan: {e}")

        ctx.summary = summary
        await ctx.emit(RunMessage(
            action_type=MessageKind.SUMMARY,
            status=MessageStatus.SUCCESS,
            content=summary,
            payload={"plan": ctx.plan.to_list()},
        ))

    async def _fail(self, ctx: RunContext, reason: str, error_type: Optional[str] = None) -> None:
        if ctx.state.is_terminal:
            return
        ctx.error = reason
        ctx.summary = prompts.render_partial_summary(
            ctx.goal, ctx.plan.render_markdown(), reason, len(ctx.memory.steps),
        )
        ctx.transition(RunState.FAILED, reason)
        metadata: Dict[str, Any] = {"state": RunState.FAILED.value}
        if error_type:
            metadata["error_type"] = error_type
        await ctx.emit(RunMessage(
            action_type=MessageKind.SUMMARY,
            status=MessageStatus.ERROR,
            content=ctx.summary,
            payload={"plan": ctx.plan.to_list()},
            metadata=metadata,
        ))
        logger.warning(f"[CodeAct] run={ctx.run_id} failed: {reason}")

    def _mark_cancelled(self, ctx: RunContext, reason: str) -> None:
        if ctx.state.is_terminal:
            return
        ctx.error = reason
        ctx.transition(RunState.CANCELLED, reason)

    async def _finish(self, ctx: RunContext) -> None:
        """Terminal bookkeeping shared by every path"""
        try:
            await ctx.release_runtime()
        except Exception as e:
            logger.error(f"[CodeAct] run={ctx.run_id} runtime release failed: {e}")

        succeeded = ctx.state == RunState.DONE
        await ctx.emit(RunMessage(
            action_type=MessageKind.RUN_END,
            status=MessageStatus.SUCCESS if succeeded else MessageStatus.ERROR,
            content=ctx.summary if succeeded else (ctx.error or ctx.state.value),
            payload=ctx.result().to_dict(),
            metadata={"state": ctx.state.value},
        ))
        ctx.stream.close()

        ctx.audit.log_run_finished(
            run_id=ctx.run_id,
            state=ctx.state.value,
            iterations=ctx.loop_state.iterations,
            actions=len(ctx.memory.steps),
            duration_ms=int((time.monotonic() - ctx.started_at) * 1000),
            error=ctx.error,
        )
        logger.info(
            f"[CodeAct] run={ctx.run_id} finished state={ctx.state.value} "
            f"iterations={ctx.loop_state.iterations} actions={len(ctx.memory.steps)}"
        )
