"""
Remote runtime - a managed multi-tenant sandbox service reached over HTTP.

Service API:
    POST   /sessions                      -> {"session_id": ...}
    POST   /sessions/{id}/actions         run a command
    GET    /sessions/{id}/files?path=...  raw file bytes
    PUT    /sessions/{id}/files?path=...  raw file bytes in the body
    DELETE /sessions/{id}
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import RuntimeActionError, RuntimeUnavailable
from .base import CommandOutput, RuntimeSession

logger = logging.getLogger(__name__)


class RemoteRuntime(RuntimeSession):
    """
    Runtime backed by a remote sandbox service.

    Example:
        runtime = RemoteRuntime(
            spec, base_url="https://sandbox.internal", api_key=os.environ["SANDBOX_KEY"],
        )
        async with runtime:
            result = await runtime.do_action(RuntimeAction("run_command", {"command": "pytest"}))
    """

    kind = "remote"

    def __init__(
        self,
        *args,
        base_url: str,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        if not base_url:
            raise ValueError("base_url is required for RemoteRuntime")
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.remote_id: Optional[str] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                # Per-call bounds come from the provision/action timeouts
                timeout=httpx.Timeout(None, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def _session_path(self, suffix: str = "") -> str:
        return f"/sessions/{self.remote_id}{suffix}"

    async def _provision(self) -> None:
        payload: Dict[str, Any] = {
            "user_id": self.spec.user_id,
            "conversation_id": self.spec.conversation_id,
            "workspace": self.workspace.as_posix(),
            "image": self.spec.image,
            "env": self.spec.env,
        }
        if self.port_block is not None:
            payload["ports"] = self.port_block.to_dict()

        try:
            response = await self._get_client().post("/sessions", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RuntimeUnavailable(f"Sandbox service at {self.base_url} unavailable: {e}") from e

        body = response.json()
        self.remote_id = body.get("session_id")
        if not self.remote_id:
            raise RuntimeUnavailable(f"Sandbox service returned no session_id: {body}")
        logger.info(f"[Runtime] Remote session {self.remote_id} ready")

    async def _run_command(self, command: str, cwd: str) -> CommandOutput:
        try:
            response = await self._get_client().post(
                self._session_path("/actions"),
                json={
                    "action_type": "run_command",
                    "command": command,
                    "cwd": cwd,
                    "timeout": self.action_timeout,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RuntimeActionError(f"Remote command failed: {e}", metadata={"cwd": cwd}) from e

        try:
            body = response.json()
            exit_code = int(body.get("exit_code", -1))
        except (ValueError, TypeError, AttributeError) as e:
            raise RuntimeActionError(
                f"Sandbox service sent an unreadable command result: {response.text[:200]!r}",
                metadata={"cwd": cwd},
            ) from e

        return CommandOutput(
            exit_code=exit_code,
            stdout=body.get("stdout") or "",
            stderr=body.get("stderr") or "",
            timed_out=bool(body.get("timed_out", False)),
        )

    async def _read_bytes(self, rel_path: str) -> bytes:
        try:
            response = await self._get_client().get(self._session_path("/files"), params={"path": rel_path})
        except httpx.HTTPError as e:
            raise RuntimeActionError(f"Cannot read {rel_path}: {e}", metadata={"path": rel_path}) from e
        if response.status_code == 404:
            raise RuntimeActionError(f"No such file: {rel_path}", metadata={"path": rel_path})
        if response.status_code >= 400:
            raise RuntimeActionError(
                f"Cannot read {rel_path}: HTTP {response.status_code}", metadata={"path": rel_path}
            )
        return response.content

    async def _write_bytes(self, rel_path: str, data: bytes) -> None:
        try:
            response = await self._get_client().put(
                self._session_path("/files"),
                params={"path": rel_path},
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RuntimeActionError(f"Cannot write {rel_path}: {e}", metadata={"path": rel_path}) from e

    async def _teardown(self) -> None:
        try:
            if self.remote_id:
                response = await self._get_client().delete(self._session_path())
                if response.status_code not in (200, 202, 204, 404):
                    logger.warning(
                        f"[Runtime] Remote delete of {self.remote_id} returned {response.status_code}"
                    )
        finally:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
