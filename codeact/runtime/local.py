"""
Local runtime - direct process execution on the host.

No isolation beyond the workspace path jail: commands run as the engine's
own user with the workspace as working directory.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict

from ..errors import RuntimeActionError
from .base import CommandOutput, RuntimeSession

logger = logging.getLogger(__name__)


class HostWorkspaceMixin:
    """File access for backends whose workspace is a host directory"""

    def _jailed(self, rel_path: str) -> Path:
        """Resolve against the workspace, following symlinks, and stay inside it"""
        jail = self.workspace.resolve()
        resolved = (jail / rel_path).resolve()
        if not resolved.is_relative_to(jail):
            raise RuntimeActionError(f"Path escapes workspace: {rel_path}", metadata={"path": rel_path})
        return resolved

    async def _read_bytes(self, rel_path: str) -> bytes:
        target = self._jailed(rel_path)
        return await asyncio.to_thread(target.read_bytes)

    async def _write_bytes(self, rel_path: str, data: bytes) -> None:
        target = self._jailed(rel_path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)


class LocalRuntime(HostWorkspaceMixin, RuntimeSession):
    """Runs commands with asyncio subprocesses inside the conversation workspace"""

    kind = "local"

    async def _provision(self) -> None:
        self.workspace.mkdir(parents=True, exist_ok=True)

    def _environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.spec.env)
        env["CODEACT_WORKSPACE"] = str(self.workspace.resolve())
        if self.port_block is not None:
            env["CODEACT_EXECUTION_PORT"] = str(self.port_block.execution)
            env["CODEACT_INSPECTION_PORT"] = str(self.port_block.inspection)
            env["CODEACT_APP_PORTS"] = f"{self.port_block.app_start}-{self.port_block.app_end - 1}"
        return env

    async def _run_command(self, command: str, cwd: str) -> CommandOutput:
        workdir = self._jailed(cwd)
        if not workdir.is_dir():
            raise RuntimeActionError(f"Working directory does not exist: {cwd}", metadata={"cwd": cwd})

        logger.debug(f"[Runtime] local exec in {workdir}: {command[:200]}")
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir),
            env=self._environment(),
        )
        try:
            stdout, stderr = await proc.communicate()
        finally:
            # Timeout or cancellation: do not leave the process behind
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        return CommandOutput(
            exit_code=proc.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _teardown(self) -> None:
        # The workspace outlives the session
        return None
