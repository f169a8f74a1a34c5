"""
Docker runtime - one container per (user, conversation) on the local engine.

The conversation workspace is bind-mounted at ``/workspace`` and the
session's port block is published, so file I/O goes straight to the host
directory while commands run inside the container via ``docker exec``.
"""

import asyncio
import logging
import re
import shlex
from typing import List, Optional

from ..errors import RuntimeActionError, RuntimeUnavailable
from .base import CommandOutput, RuntimeSession
from .local import HostWorkspaceMixin

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"
DEFAULT_IMAGE = "python:3.12-slim"


def container_name(user_id: str, conversation_id: str) -> str:
    """Deterministic container identity for a conversation"""
    raw = f"codeact-{user_id}-{conversation_id}".lower()
    return re.sub(r"[^a-z0-9_.-]", "-", raw)[:128]


class DockerRuntime(HostWorkspaceMixin, RuntimeSession):
    """Container-backed runtime driven through the docker CLI"""

    kind = "docker"

    def __init__(self, *args, docker_binary: str = "docker", **kwargs):
        super().__init__(*args, **kwargs)
        self.docker_binary = docker_binary
        self.container = container_name(self.spec.user_id, self.spec.conversation_id)
        self.image = self.spec.image or DEFAULT_IMAGE

    async def _docker(self, *args: str, timeout: Optional[float] = None) -> CommandOutput:
        """Run one docker CLI command"""
        proc = await asyncio.create_subprocess_exec(
            self.docker_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            if timeout is not None:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            else:
                stdout, stderr = await proc.communicate()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        return CommandOutput(
            exit_code=proc.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def run_arguments(self) -> List[str]:
        """Arguments for ``docker run`` that create this session's container"""
        args = [
            "run", "-d",
            "--name", self.container,
            "--label", f"codeact.user={self.spec.user_id}",
            "--label", f"codeact.conversation={self.spec.conversation_id}",
            "-v", f"{self.workspace.resolve()}:{CONTAINER_WORKSPACE}",
            "-w", CONTAINER_WORKSPACE,
        ]
        if self.port_block is not None:
            block = self.port_block
            args += ["-p", f"{block.execution}:{block.execution}"]
            args += ["-p", f"{block.inspection}:{block.inspection}"]
            args += ["-p", f"{block.app_start}-{block.app_end - 1}:{block.app_start}-{block.app_end - 1}"]
            args += ["-e", f"CODEACT_EXECUTION_PORT={block.execution}"]
            args += ["-e", f"CODEACT_INSPECTION_PORT={block.inspection}"]
            args += ["-e", f"CODEACT_APP_PORTS={block.app_start}-{block.app_end - 1}"]
        for key, value in self.spec.env.items():
            args += ["-e", f"{key}={value}"]
        args += [self.image, "sleep", "infinity"]
        return args

    async def _provision(self) -> None:
        self.workspace.mkdir(parents=True, exist_ok=True)

        # A stale container from an earlier run of this conversation is replaced
        await self._docker("rm", "-f", self.container)

        logger.debug(f"[Runtime] {self.describe()}")
        result = await self._docker(*self.run_arguments())
        if result.exit_code != 0:
            raise RuntimeUnavailable(
                f"docker run failed for {self.container}: {result.stderr.strip() or result.stdout.strip()}"
            )
        logger.info(f"[Runtime] Started container {self.container} ({self.image})")

    async def _run_command(self, command: str, cwd: str) -> CommandOutput:
        workdir = CONTAINER_WORKSPACE if cwd == "." else f"{CONTAINER_WORKSPACE}/{cwd}"
        logger.debug(f"[Runtime] docker exec {self.container} in {workdir}: {command[:200]}")
        return await self._docker("exec", "-w", workdir, self.container, "sh", "-lc", command)

    async def _teardown(self) -> None:
        result = await self._docker("rm", "-f", self.container)
        if result.exit_code != 0:
            raise RuntimeActionError(f"docker rm failed: {result.stderr.strip()}")
        logger.info(f"[Runtime] Removed container {self.container}")

    def describe(self) -> str:
        return shlex.join([self.docker_binary, *self.run_arguments()])
