"""
Tests for the CodeActLoop

Drives the loop directly on a hand-built RunContext to check the stopping
checks, dispatch paths and memory bookkeeping without the orchestrator.
"""

import pytest

from codeact.llm.channel import CompletionChannel
from codeact.orchestrator.code_act import CodeActLoop
from codeact.orchestrator.loop_config import LoopConfig, LoopExit
from codeact.orchestrator.models import RunContext
from codeact.orchestrator.tracker import Plan, TaskStatus
from codeact.runtime.base import RuntimeSpec
from codeact.streaming import MessageKind, MessageStream
from codeact.tools.decorator import tool


@pytest.fixture
def make_context(registry, runtimes):
    def make(plan=None, tool_names=None, loop_config=None, runtime_factory=None):
        ctx = RunContext(
            goal="Build it",
            conversation_id="conv-1",
            user_id="user-1",
            runtime_kind="local",
            planning_mode="single_shot",
            tool_names=tool_names or registry.resolve_allowlist(None),
            runtime_spec=RuntimeSpec(user_id="user-1", conversation_id="conv-1"),
            runtime_factory=runtime_factory or runtimes(),
            stream=MessageStream(conversation_id="conv-1"),
            loop_config=loop_config or LoopConfig(retry_delay=0),
        )
        ctx.plan = plan or Plan.from_descriptions(["Build it"])
        return ctx
    return make


def make_loop(client, registry, completion_retries=3):
    channel = CompletionChannel(client, completion_retries=completion_retries, retry_delay=0)
    return CodeActLoop(channel, registry)


class TestStoppingChecks:
    """The checks before every iteration, in their fixed order"""

    @pytest.mark.asyncio
    async def test_cancellation_is_checked_first(self, scripted, registry, make_context):
        plan = Plan.from_descriptions(["Done already"])
        plan.set_status("task-1", TaskStatus.ACTIVE)
        plan.set_status("task-1", TaskStatus.SUCCESS)
        ctx = make_context(plan=plan)
        ctx.cancel.cancel("stop now")

        exit_reason = await make_loop(scripted(), registry).run(ctx)

        assert exit_reason == LoopExit.CANCELLED
        assert ctx.loop_state.exit_reason == "stop now"

    @pytest.mark.asyncio
    async def test_all_succeeded_summarizes_without_asking(self, scripted, registry, make_context):
        plan = Plan.from_descriptions(["Done already"])
        plan.set_status("task-1", TaskStatus.ACTIVE)
        plan.set_status("task-1", TaskStatus.SUCCESS)
        client = scripted()
        ctx = make_context(plan=plan)

        assert await make_loop(client, registry).run(ctx) == LoopExit.SUMMARIZE
        assert ctx.loop_state.iterations == 0
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_iteration_bound_before_failure_threshold(self, scripted, registry, make_context):
        ctx = make_context()
        ctx.loop_state.iterations = 25
        ctx.loop_state.consecutive_failures = 3

        assert await make_loop(scripted(), registry).run(ctx) == LoopExit.FAILED
        assert "iteration limit of 25" in ctx.loop_state.exit_reason

    @pytest.mark.asyncio
    async def test_failure_threshold_reflects_before_dispatch(self, scripted, registry, make_context):
        client = scripted()
        ctx = make_context()
        ctx.loop_state.consecutive_failures = 3

        assert await make_loop(client, registry).run(ctx) == LoopExit.REFLECT
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, scripted, registry, make_context, runtimes):
        factory = runtimes(fail_always=True)
        client = scripted(default=scripted.call("run_command", command="false"))
        ctx = make_context(
            loop_config=LoopConfig(failure_threshold=2, retry_delay=0),
            runtime_factory=factory,
        )

        assert await make_loop(client, registry).run(ctx) == LoopExit.REFLECT
        assert ctx.loop_state.iterations == 2
        assert factory.sessions[0].commands == ["false", "false"]


class TestSteps:
    """Single iterations"""

    @pytest.mark.asyncio
    async def test_task_activated_then_finished(self, scripted, registry, make_context):
        client = scripted([scripted.call("finish", result="all good")])
        ctx = make_context()

        assert await make_loop(client, registry).run(ctx) == LoopExit.SUMMARIZE

        task = ctx.plan.tasks[0]
        assert task.result == "all good"
        assert ctx.plan.log.transitions("task-1") == [TaskStatus.ACTIVE, TaskStatus.SUCCESS]
        statuses = [m.metadata["task_status"] for m in ctx.stream.history() if m.action_type == MessageKind.TASK_STATUS]
        assert statuses == ["active", "success"]

    @pytest.mark.asyncio
    async def test_reply_without_tool_keeps_failure_count(self, scripted, registry, make_context):
        client = scripted([scripted.say("Nothing left to do here.")])
        ctx = make_context()
        ctx.loop_state.consecutive_failures = 1

        await make_loop(client, registry).run(ctx)

        assert ctx.plan.tasks[0].status == TaskStatus.SUCCESS
        assert ctx.loop_state.consecutive_failures == 1
        assert ctx.memory.steps == []

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, scripted, registry, make_context, runtimes):
        factory = runtimes(fail_first=2)
        client = scripted([
            scripted.call("run_command", command="pytest"),
            scripted.call("run_command", command="pytest"),
            scripted.call("run_command", command="pytest"),
            scripted.call("finish", result="tests pass"),
        ])
        ctx = make_context(runtime_factory=factory)
        loop = make_loop(client, registry)
        task = ctx.plan.tasks[0]
        ctx.plan.set_status(task.id, TaskStatus.ACTIVE)

        await loop.step(ctx, task)
        await loop.step(ctx, task)
        assert ctx.loop_state.consecutive_failures == 2
        await loop.step(ctx, task)
        assert ctx.loop_state.consecutive_failures == 0
        assert ctx.plan.tasks[0].status == TaskStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_read_file_is_memorized(self, scripted, registry, make_context, runtimes):
        factory = runtimes()
        client = scripted([
            scripted.call("write_file", path="notes.txt", content="remember me"),
            scripted.call("read_file", path="notes.txt"),
            scripted.call("run_command", command="ls"),
            scripted.call("finish", result="ok"),
        ])
        ctx = make_context(runtime_factory=factory)

        await make_loop(client, registry).run(ctx)

        write_step, read_step, run_step, finish_step = ctx.memory.steps
        assert read_step.memorized
        assert not write_step.memorized

        tool_results = {
            m["tool_call_id"]: m["content"] for m in ctx.memory.to_messages() if m["role"] == "tool"
        }
        assert tool_results[read_step.action.uuid] == "remember me"
        assert "output elided" in tool_results[write_step.action.uuid]
        assert "output elided" in tool_results[run_step.action.uuid]
        assert tool_results[finish_step.action.uuid] == finish_step.observation.content

    @pytest.mark.asyncio
    async def test_custom_tool_receives_context(self, scripted, registry, make_context):
        seen = {}

        @tool(registry=registry)
        async def lookup_ticket(ticket_id: str, context=None) -> str:
            """Fetch a ticket.

            Args:
                ticket_id: Ticket identifier
            """
            seen["context"] = context
            return f"ticket {ticket_id} is open"

        client = scripted([scripted.call("lookup_ticket", ticket_id="T-7")])
        ctx = make_context()
        task = ctx.plan.tasks[0]
        ctx.plan.set_status(task.id, TaskStatus.ACTIVE)

        await make_loop(client, registry).step(ctx, task)

        observation = ctx.memory.observations[0]
        assert observation.content == "ticket T-7 is open"
        context = seen["context"]
        assert context.run_id == ctx.run_id
        assert context.user_id == "user-1"
        assert context.metadata["task_id"] == task.id
        # In-process tools do not force a runtime session
        assert ctx.runtime is None

    @pytest.mark.asyncio
    async def test_tool_outside_run_allowlist(self, scripted, registry, make_context, runtimes):
        factory = runtimes()
        client = scripted([scripted.call("run_command", command="ls")])
        ctx = make_context(tool_names=["finish"], runtime_factory=factory)
        task = ctx.plan.tasks[0]
        ctx.plan.set_status(task.id, TaskStatus.ACTIVE)

        await make_loop(client, registry).step(ctx, task)

        observation = ctx.memory.observations[0]
        assert observation.is_error
        assert observation.metadata["error_type"] == "ToolNotFound"
        assert ctx.loop_state.consecutive_failures == 1
        assert factory.sessions == []

    @pytest.mark.asyncio
    async def test_invalid_runtime_arguments_skip_provisioning(self, scripted, registry, make_context, runtimes):
        factory = runtimes()
        client = scripted([scripted.call("run_command", command=["ls", "-la"])])
        ctx = make_context(runtime_factory=factory)
        task = ctx.plan.tasks[0]
        ctx.plan.set_status(task.id, TaskStatus.ACTIVE)

        await make_loop(client, registry).step(ctx, task)

        observation = ctx.memory.observations[0]
        assert observation.metadata["error_type"] == "ToolArgumentInvalid"
        assert factory.sessions == []

    @pytest.mark.asyncio
    async def test_unparseable_completion(self, scripted, registry, make_context):
        client = scripted(default=scripted.calls_many("run_command", "write_file"))
        ctx = make_context()
        task = ctx.plan.tasks[0]
        ctx.plan.set_status(task.id, TaskStatus.ACTIVE)

        await make_loop(client, registry, completion_retries=1).step(ctx, task)

        assert len(client.calls) == 2
        assert ctx.loop_state.consecutive_failures == 1
        assert ctx.memory.steps == []
        notes = [m for m in ctx.memory.to_messages() if "could not be parsed" in (m["content"] or "")]
        assert len(notes) == 1
        error = ctx.stream.history()[-1]
        assert error.action_type == MessageKind.COMPLETION_ERROR
        assert error.metadata["consecutive_failures"] == 1
