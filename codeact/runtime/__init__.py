"""
CodeAct Runtime - Sandboxed execution environments

Provides:
- RuntimeSession: lifecycle contract (connect, do_action, read/write, release)
- LocalRuntime / DockerRuntime / RemoteRuntime backends
- PortAllocator: non-overlapping port blocks per conversation

Usage:
    from codeact.runtime import RuntimeAction, RuntimeSpec, create_runtime

    session = create_runtime("docker", RuntimeSpec(user_id="u1", conversation_id="c1"))
    async with session:
        result = await session.do_action(RuntimeAction("run_command", {"command": "ls"}))
"""

from .base import CommandOutput, RuntimeAction, RuntimeSession, RuntimeSpec, truncate
from .ports import PortAllocator, PortBlock
from .local import HostWorkspaceMixin, LocalRuntime
from .docker import DockerRuntime, container_name
from .remote import RemoteRuntime
from .factory import RUNTIME_KINDS, create_runtime

__all__ = [
    "CommandOutput",
    "RuntimeAction",
    "RuntimeSession",
    "RuntimeSpec",
    "truncate",
    "PortAllocator",
    "PortBlock",
    "HostWorkspaceMixin",
    "LocalRuntime",
    "DockerRuntime",
    "container_name",
    "RemoteRuntime",
    "RUNTIME_KINDS",
    "create_runtime",
]
