"""Shared doubles for engine tests.

- ScriptedLLMClient: a BaseLLMClient whose streamed replies are scripted
- FakeRuntime / FakeRuntimeFactory: in-memory runtime sessions that count
  provisioning and release calls
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest

from codeact.config.loader import EngineConfig
from codeact.llm.base import BaseLLMClient, LLMConfig, LLMResponse, StopReason, StreamChunk, ToolCall
from codeact.llm.channel import CompletionChannel
from codeact.orchestrator.orchestrator import Orchestrator
from codeact.runtime.base import CommandOutput, RuntimeSession, RuntimeSpec
from codeact.tools.builtin import builtin_tools
from codeact.tools.registry import ToolRegistry


# =============================================================================
# Scripted LLM
# =============================================================================

@dataclass
class Reply:
    """One scripted completion"""
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    hang: bool = False
    error: Optional[Exception] = None


class ScriptedLLMClient(BaseLLMClient):
    """
    Streams scripted replies in order, word by word.

    When the script runs out, ``default`` is used (or the call fails).
    ``responder(messages, tools)`` can return a Reply to take precedence
    over the script (e.g. to answer summary requests).
    """

    provider = "scripted"

    def __init__(
        self,
        replies: Optional[List[Reply]] = None,
        default: Optional[Reply] = None,
        responder: Optional[Callable[[List[Dict[str, Any]], Any], Optional[Reply]]] = None,
    ):
        super().__init__(LLMConfig(model="scripted"))
        self.replies = list(replies or [])
        self.default = default
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []
        self.hanging = asyncio.Event()
        self.closed_streams = 0

    # ----- reply builders -----

    @staticmethod
    def say(text: str) -> Reply:
        return Reply(content=text)

    @staticmethod
    def call(name: str, thought: str = "Working on it.", **arguments: Any) -> Reply:
        return Reply(
            content=thought,
            tool_calls=[ToolCall(id=f"call_{name}", name=name, arguments=arguments)],
        )

    @staticmethod
    def calls_many(*names: str) -> Reply:
        return Reply(
            content="Doing several things.",
            tool_calls=[ToolCall(id=f"call_{i}", name=n, arguments={}) for i, n in enumerate(names)],
        )

    @staticmethod
    def hang_forever() -> Reply:
        return Reply(hang=True)

    @staticmethod
    def fail(error: Exception) -> Reply:
        return Reply(error=error)

    # ----- BaseLLMClient -----

    async def _call_api(self, messages, tools=None, **kwargs):
        return LLMResponse(content="")

    def _next_reply(self, messages, tools) -> Reply:
        if self.responder is not None:
            reply = self.responder(messages, tools)
            if reply is not None:
                return reply
        if self.replies:
            return self.replies.pop(0)
        if self.default is not None:
            return self.default
        raise RuntimeError("script exhausted")

    async def _stream_api(self, messages, tools=None, **kwargs):
        self.calls.append({"messages": messages, "tools": tools})
        reply = self._next_reply(messages, tools)
        try:
            if reply.error is not None:
                raise reply.error
            if reply.hang:
                self.hanging.set()
                await asyncio.Event().wait()

            words = reply.content.split(" ") if reply.content else []
            for i, word in enumerate(words):
                yield StreamChunk(content=word if i == 0 else f" {word}")
            yield StreamChunk(
                content="",
                tool_calls=list(reply.tool_calls) or None,
                is_final=True,
                stop_reason=StopReason.TOOL_USE if reply.tool_calls else StopReason.END_TURN,
            )
        finally:
            self.closed_streams += 1


def is_summary_request(messages, tools) -> bool:
    return tools is None and messages[0]["content"].startswith("Summarize")


# =============================================================================
# Fake runtime
# =============================================================================

class FakeRuntime(RuntimeSession):
    """In-memory runtime; commands succeed unless scripted to fail or block"""

    kind = "fake"

    def __init__(self, spec: RuntimeSpec, fail_first: int = 0, fail_always: bool = False,
                 fail_provision: bool = False, block_commands: bool = False, **kwargs):
        super().__init__(spec, **kwargs)
        self.block_commands = block_commands
        self.command_started = asyncio.Event()
        self.files: Dict[str, bytes] = {}
        self.commands: List[str] = []
        self.provision_calls = 0
        self.fail_first = fail_first
        self.fail_always = fail_always
        self.fail_provision = fail_provision

    async def _provision(self) -> None:
        self.provision_calls += 1
        if self.fail_provision:
            raise OSError("sandbox image missing")

    async def _run_command(self, command: str, cwd: str) -> CommandOutput:
        self.commands.append(command)
        if self.block_commands:
            self.command_started.set()
            await asyncio.Event().wait()
        if self.fail_always or len(self.commands) <= self.fail_first:
            return CommandOutput(exit_code=1, stderr=f"{command}: failed")
        return CommandOutput(exit_code=0, stdout=f"ran {command}")

    async def _read_bytes(self, rel_path: str) -> bytes:
        if rel_path not in self.files:
            raise FileNotFoundError(rel_path)
        return self.files[rel_path]

    async def _write_bytes(self, rel_path: str, data: bytes) -> None:
        self.files[rel_path] = data

    async def _teardown(self) -> None:
        return None


class FakeRuntimeFactory:
    """RuntimeFactory that remembers every session it created"""

    def __init__(self, **options: Any):
        self.options = options
        self.sessions: List[FakeRuntime] = []
        self.kinds: List[str] = []

    def __call__(self, kind: str, spec: RuntimeSpec) -> FakeRuntime:
        self.kinds.append(kind)
        session = FakeRuntime(spec, **self.options)
        self.sessions.append(session)
        return session


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def scripted():
    """The ScriptedLLMClient class (call it with a reply list)"""
    return ScriptedLLMClient


@pytest.fixture
def summary_responder():
    """Responder answering summary requests with a fixed text"""
    def respond(messages, tools):
        if is_summary_request(messages, tools):
            return Reply(content="Created hello.py and ran it.")
        return None
    return respond


@pytest.fixture
def runtimes():
    """Factory for FakeRuntimeFactory instances"""
    return FakeRuntimeFactory


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.load(builtin_tools())
    return reg


@pytest.fixture
def make_orchestrator(registry):
    def make(client, runtime_factory=None, config=None, **kwargs):
        config = config or EngineConfig()
        config.loop.retry_delay = 0
        channel = CompletionChannel(client, retry_delay=0)
        return Orchestrator(
            channel,
            registry,
            config=config,
            runtime_factory=runtime_factory or FakeRuntimeFactory(),
            **kwargs,
        )
    return make
