"""
CodeAct Runtime Base - Uniform contract over sandboxed execution backends

Every backend (local process, local docker, remote managed sandbox) exposes
the same session lifecycle:

    session = LocalRuntime(spec)
    await session.connect()              # provision, bounded by a timeout
    result = await session.do_action(RuntimeAction("run_command", {"command": "ls"}))
    await session.release()              # idempotent teardown

Backends only implement the provisioning and I/O primitives; workspace
jailing, timeouts and result formatting live here.
"""

import asyncio
import logging
import posixpath
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..constants import (
    ACTION_READ_FILE,
    ACTION_RUN_COMMAND,
    ACTION_WRITE_FILE,
    DEFAULT_ACTION_TIMEOUT,
    DEFAULT_PROVISION_TIMEOUT,
    MAX_OBSERVATION_CHARS,
)
from ..errors import CancellationRequested, RuntimeActionError, RuntimeUnavailable
from ..tools.models import ToolResult
from .ports import PortAllocator, PortBlock

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _check_id(label: str, value: str) -> str:
    if not value or not _SAFE_ID.match(value) or ".." in value:
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


@dataclass
class RuntimeSpec:
    """
    What a session is provisioned for.

    The workspace directory is unique per conversation:
    ``{workspace_root}/user_{user_id}/conversation_{conversation_id}``.
    """
    user_id: str
    conversation_id: str
    workspace_root: str = "./workspaces"
    image: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        _check_id("user_id", self.user_id)
        _check_id("conversation_id", self.conversation_id)

    @property
    def workspace(self) -> Path:
        return Path(self.workspace_root) / f"user_{self.user_id}" / f"conversation_{self.conversation_id}"


@dataclass
class RuntimeAction:
    """A structured action for the runtime (run_command, write_file, read_file)"""
    action_type: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    uuid: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class CommandOutput:
    """Raw result of one shell command"""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    def render(self, limit: int = MAX_OBSERVATION_CHARS) -> str:
        parts = [f"[exit code: {self.exit_code}]"]
        if self.stdout:
            parts.append(self.stdout.rstrip("\n"))
        if self.stderr:
            parts.append("[stderr]")
            parts.append(self.stderr.rstrip("\n"))
        return truncate("\n".join(parts), limit)


def truncate(text: str, limit: int = MAX_OBSERVATION_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[OUTPUT TRUNCATED: {len(text) - limit} more characters]"


class RuntimeSession(ABC):
    """
    Abstract base class for runtime backends.

    Subclasses implement:
        _provision()                       create or attach to the environment
        _run_command(command, cwd)         run a shell command, return CommandOutput
        _read_bytes(rel_path)              read a workspace file
        _write_bytes(rel_path, data)       write a workspace file
        _teardown()                        destroy the environment
    """

    kind: str = "base"

    def __init__(
        self,
        spec: RuntimeSpec,
        ports: Optional[PortAllocator] = None,
        provision_timeout: float = DEFAULT_PROVISION_TIMEOUT,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT,
    ):
        self.spec = spec
        self.session_id = f"{self.kind}-{uuid.uuid4().hex[:12]}"
        self.provision_timeout = provision_timeout
        self.action_timeout = action_timeout
        self.port_block: Optional[PortBlock] = None
        self.release_calls = 0
        self._ports = ports
        self._connected = False
        self._released = False
        self._connect_lock = asyncio.Lock()

    @property
    def workspace(self) -> Path:
        return self.spec.workspace

    @property
    def connected(self) -> bool:
        return self._connected and not self._released

    @property
    def released(self) -> bool:
        return self._released

    # ===== Lifecycle =====

    async def connect(self) -> None:
        """
        Provision the environment (no-op if already connected).

        Raises:
            RuntimeUnavailable: Provisioning failed or exceeded the timeout
        """
        async with self._connect_lock:
            if self._released:
                raise RuntimeUnavailable(f"Session {self.session_id} was already released")
            if self._connected:
                return

            if self._ports is not None:
                self.port_block = self._ports.acquire(self.spec.user_id, self.spec.conversation_id)

            try:
                await asyncio.wait_for(self._provision(), timeout=self.provision_timeout)
            except asyncio.TimeoutError:
                self._free_ports()
                logger.error(
                    f"[Runtime] {self.kind} provisioning exceeded {self.provision_timeout}s "
                    f"for {self.spec.user_id}/{self.spec.conversation_id}"
                )
                raise RuntimeUnavailable(
                    f"{self.kind} runtime not ready within {self.provision_timeout}s"
                )
            except RuntimeUnavailable:
                self._free_ports()
                raise
            except Exception as e:
                self._free_ports()
                logger.error(f"[Runtime] {self.kind} provisioning failed: {e}", exc_info=True)
                raise RuntimeUnavailable(f"{self.kind} runtime provisioning failed: {e}") from e

            self._connected = True
            logger.info(
                f"[Runtime] Connected {self.session_id} workspace={self.workspace} "
                f"ports={self.port_block.to_dict() if self.port_block else None}"
            )

    async def release(self) -> None:
        """Tear down the environment. Safe to call any number of times."""
        self.release_calls += 1
        if self._released:
            return
        self._released = True

        if self._connected:
            try:
                await self._teardown()
            except Exception as e:
                logger.warning(f"[Runtime] Teardown of {self.session_id} failed: {e}")
        self._free_ports()
        logger.info(f"[Runtime] Released {self.session_id}")

    def _free_ports(self) -> None:
        if self._ports is not None and self.port_block is not None:
            self._ports.release(self.spec.user_id, self.spec.conversation_id)
            self.port_block = None

    async def __aenter__(self) -> "RuntimeSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()

    # ===== Actions =====

    async def do_action(self, action: RuntimeAction) -> ToolResult:
        """
        Execute one action and resolve it to exactly one result.

        Failures inside the environment (non-zero exit, timeout, bad path)
        become error results; only a session that is not connected raises.

        Raises:
            RuntimeUnavailable: The session is not connected
        """
        if not self.connected:
            raise RuntimeUnavailable(f"Session {self.session_id} is not connected")

        metadata = {
            "action_type": action.action_type,
            "correlation_id": action.uuid,
            "session_id": self.session_id,
        }
        try:
            result = await asyncio.wait_for(self._execute(action), timeout=self.action_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Runtime] {action.action_type} timed out after {self.action_timeout}s")
            return ToolResult.error(
                f"{action.action_type} timed out after {self.action_timeout}s",
                metadata={**metadata, "error_type": "Timeout"},
            )
        except RuntimeActionError as e:
            return ToolResult.error(
                str(e),
                metadata={**metadata, **e.metadata, "error_type": "RuntimeActionError"},
            )
        except (RuntimeUnavailable, CancellationRequested):
            raise
        except Exception as e:
            # Backend bugs and garbled replies still resolve to one observation
            logger.warning(f"[Runtime] {action.action_type} failed in {self.session_id}: {type(e).__name__}: {e}")
            return ToolResult.error(
                f"{action.action_type} failed: {type(e).__name__}: {e}",
                metadata={**metadata, "error_type": "RuntimeActionError", "cause": type(e).__name__},
            )

        result.metadata = {**result.metadata, **metadata}
        return result

    async def _execute(self, action: RuntimeAction) -> ToolResult:
        args = action.arguments
        if action.action_type == ACTION_RUN_COMMAND:
            cwd = self.resolve_path(args.get("cwd") or ".")
            output = await self._run_command(args["command"], cwd)
            content = output.render()
            meta = {"exit_code": output.exit_code, "timed_out": output.timed_out}
            if output.exit_code != 0 or output.timed_out:
                return ToolResult.error(content, metadata=meta)
            return ToolResult.success(content, metadata=meta)

        if action.action_type == ACTION_WRITE_FILE:
            path = args["path"]
            size = await self.write_file(path, args.get("content", ""))
            return ToolResult.success(f"Wrote {size} bytes to {path}", file_path=path)

        if action.action_type == ACTION_READ_FILE:
            path = args["path"]
            text = await self.read_file(path)
            return ToolResult.success(truncate(text), file_path=path)

        raise RuntimeActionError(f"Unsupported runtime action: {action.action_type}")

    async def read_file(self, path: str) -> str:
        """
        Read a workspace file as text.

        Raises:
            RuntimeActionError: Path escapes the workspace or cannot be read
        """
        data = await self.read_bytes(path)
        return data.decode("utf-8", errors="replace")

    async def read_bytes(self, path: str) -> bytes:
        if not self.connected:
            raise RuntimeUnavailable(f"Session {self.session_id} is not connected")
        rel = self.resolve_path(path)
        try:
            return await self._read_bytes(rel)
        except RuntimeActionError:
            raise
        except (OSError, ValueError) as e:
            raise RuntimeActionError(f"Cannot read {path}: {e}", metadata={"path": path}) from e

    async def write_file(self, path: str, content: Union[str, bytes]) -> int:
        """
        Write a workspace file, creating parent directories.

        Returns:
            Number of bytes written

        Raises:
            RuntimeActionError: Path escapes the workspace or cannot be written
        """
        if not self.connected:
            raise RuntimeUnavailable(f"Session {self.session_id} is not connected")
        rel = self.resolve_path(path)
        if rel == ".":
            raise RuntimeActionError("Cannot write to the workspace root", metadata={"path": path})
        data = content.encode("utf-8") if isinstance(content, str) else content
        try:
            await self._write_bytes(rel, data)
        except RuntimeActionError:
            raise
        except (OSError, ValueError) as e:
            raise RuntimeActionError(f"Cannot write {path}: {e}", metadata={"path": path}) from e
        return len(data)

    def resolve_path(self, path: str) -> str:
        """
        Normalize a path to a POSIX path relative to the workspace root.

        Absolute paths are accepted only when they point inside the workspace.

        Raises:
            RuntimeActionError: The path escapes the workspace
        """
        raw = str(path).replace("\\", "/")
        workspace = self.workspace.as_posix()
        if raw.startswith("/"):
            absolute = posixpath.normpath(raw)
            for root in (workspace, posixpath.normpath(str(self.workspace.resolve().as_posix()))):
                if absolute == root:
                    return "."
                if absolute.startswith(root + "/"):
                    return absolute[len(root) + 1:]
            raise RuntimeActionError(f"Path escapes workspace: {path}", metadata={"path": path})

        normalized = posixpath.normpath(raw or ".")
        if normalized == ".." or normalized.startswith("../"):
            raise RuntimeActionError(f"Path escapes workspace: {path}", metadata={"path": path})
        return normalized

    # ===== Backend primitives =====

    @abstractmethod
    async def _provision(self) -> None:
        pass

    @abstractmethod
    async def _run_command(self, command: str, cwd: str) -> CommandOutput:
        pass

    @abstractmethod
    async def _read_bytes(self, rel_path: str) -> bytes:
        pass

    @abstractmethod
    async def _write_bytes(self, rel_path: str, data: bytes) -> None:
        pass

    @abstractmethod
    async def _teardown(self) -> None:
        pass

    def __repr__(self) -> str:
        state = "released" if self._released else ("connected" if self._connected else "new")
        return f"<{type(self).__name__} {self.session_id} {state}>"
