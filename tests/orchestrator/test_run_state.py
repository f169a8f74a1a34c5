"""
Tests for the run state machine, RunContext bookkeeping and the audit log
"""

import json
import logging

import pytest

from codeact.config.loader import EngineConfig
from codeact.errors import InvalidStateTransition
from codeact.orchestrator import LEGAL_TRANSITIONS, AuditLogger, LoopConfig, RunContext, RunState, summarize_args
from codeact.runtime.base import RuntimeSpec
from codeact.streaming import MessageStream


@pytest.fixture
def make_context(runtimes):
    def make(factory=None, audit=None):
        return RunContext(
            goal="Build it",
            conversation_id="c1",
            user_id="u1",
            runtime_kind="local",
            planning_mode="single_shot",
            tool_names=["finish"],
            runtime_spec=RuntimeSpec(user_id="u1", conversation_id="c1"),
            runtime_factory=factory or runtimes(),
            stream=MessageStream(conversation_id="c1"),
            loop_config=LoopConfig(),
            audit=audit or AuditLogger(),
        )
    return make


# =============================================================================
# State machine
# =============================================================================

class TestStateMachine:

    def test_terminal_states_have_no_exits(self):
        for state in RunState:
            assert state.is_terminal == (LEGAL_TRANSITIONS[state] == frozenset())

    def test_every_live_state_can_fail_or_cancel(self):
        for state in RunState:
            if not state.is_terminal:
                assert {RunState.FAILED, RunState.CANCELLED} <= LEGAL_TRANSITIONS[state]

    def test_happy_path_with_reflection(self, make_context):
        ctx = make_context()
        for state in (
            RunState.PLANNING,
            RunState.EXECUTING,
            RunState.REFLECTING,
            RunState.EXECUTING,
            RunState.SUMMARIZING,
            RunState.DONE,
        ):
            ctx.transition(state)
        assert ctx.state == RunState.DONE

    @pytest.mark.parametrize("path", [
        [RunState.EXECUTING],
        [RunState.PLANNING, RunState.DONE],
        [RunState.PLANNING, RunState.EXECUTING, RunState.DONE],
        [RunState.PLANNING, RunState.EXECUTING, RunState.REFLECTING, RunState.SUMMARIZING],
        [RunState.FAILED, RunState.CANCELLED],
    ])
    def test_illegal_paths(self, make_context, path):
        ctx = make_context()
        with pytest.raises(InvalidStateTransition):
            for state in path:
                ctx.transition(state)

    def test_transition_is_audited(self, make_context, caplog):
        ctx = make_context()
        with caplog.at_level(logging.INFO, logger="codeact.audit"):
            ctx.transition(RunState.PLANNING, reason="run started")

        [record] = [r for r in caplog.records if r.name == "codeact.audit"]
        entry = json.loads(record.getMessage())
        assert entry["event_type"] == "state_transition"
        assert (entry["from_state"], entry["to_state"], entry["reason"]) == ("init", "planning", "run started")
        assert entry["run_id"] == ctx.run_id


# =============================================================================
# RunContext
# =============================================================================

class TestRunContext:

    @pytest.mark.asyncio
    async def test_runtime_created_on_first_use(self, make_context, runtimes):
        factory = runtimes()
        ctx = make_context(factory=factory)
        assert factory.sessions == []

        first = await ctx.ensure_runtime()
        second = await ctx.ensure_runtime()

        assert first is second
        assert factory.kinds == ["local"]
        assert first.connected

    @pytest.mark.asyncio
    async def test_release_runtime_once(self, make_context, runtimes):
        factory = runtimes()
        ctx = make_context(factory=factory)
        await ctx.ensure_runtime()

        await ctx.release_runtime()
        await ctx.release_runtime()

        assert factory.sessions[0].release_calls == 1

    @pytest.mark.asyncio
    async def test_release_without_runtime(self, make_context):
        ctx = make_context()
        await ctx.release_runtime()
        assert ctx.runtime is None

    def test_result_snapshot(self, make_context):
        ctx = make_context()
        ctx.plan.add_tasks(["Write main.py"], source="planner")
        ctx.summary = "partial"
        result = ctx.result()

        assert result.run_id == ctx.run_id
        assert result.state == RunState.INIT
        assert not result.succeeded
        assert result.to_dict()["plan"][0]["description"] == "Write main.py"

    def test_workspace(self, make_context):
        assert make_context().workspace.endswith("user_u1/conversation_c1")


class TestLoopConfig:

    @pytest.mark.parametrize("kwargs", [
        {"max_iterations": 0},
        {"failure_threshold": 0},
        {"completion_retries": -1},
        {"retry_delay": -0.5},
    ])
    def test_rejects_bad_bounds(self, kwargs):
        with pytest.raises(ValueError):
            LoopConfig(**kwargs)

    def test_from_config(self):
        config = EngineConfig()
        config.loop.max_iterations = 4
        config.timeouts.action = 12
        loop = LoopConfig.from_config(config)
        assert loop.max_iterations == 4
        assert loop.action_timeout == 12
        assert loop.failure_threshold == 3


# =============================================================================
# Audit log
# =============================================================================

class TestAuditLogger:

    def entries(self, caplog):
        return [json.loads(r.getMessage()) for r in caplog.records if r.name == "codeact.audit"]

    def test_action_entry_truncates_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="codeact.audit"):
            AuditLogger().log_action(
                run_id="r1",
                iteration=2,
                tool_name="run_command",
                args_summary={"command": "pytest"},
                success=False,
                duration_ms=40,
                consecutive_failures=1,
                error="x" * 900,
            )

        [entry] = self.entries(caplog)
        assert entry["event_type"] == "action"
        assert entry["tool_name"] == "run_command"
        assert len(entry["error"]) == 500

    def test_default_conversation_id(self, caplog):
        with caplog.at_level(logging.INFO, logger="codeact.audit"):
            AuditLogger(conversation_id="c9").log_run_started("r1", "goal", "local", "single_shot", ["finish"])

        [entry] = self.entries(caplog)
        assert entry["conversation_id"] == "c9"
        assert entry["tools_count"] == 1

    def test_summarize_args(self):
        summary = summarize_args({"content": "y" * 300, "paths": ["a", "b"]}, limit=10)
        assert summary["content"] == "y" * 10 + "..."
        assert summary["paths"] == '["a", "b"]'
