"""
Runtime backend selection.
"""

import logging
from typing import Optional

from ..config.loader import RuntimeSettings, TimeoutSettings
from .base import RuntimeSession, RuntimeSpec
from .docker import DockerRuntime
from .local import LocalRuntime
from .ports import PortAllocator
from .remote import RemoteRuntime

logger = logging.getLogger(__name__)

RUNTIME_KINDS = ("local", "docker", "remote")


def create_runtime(
    kind: str,
    spec: RuntimeSpec,
    settings: Optional[RuntimeSettings] = None,
    timeouts: Optional[TimeoutSettings] = None,
    ports: Optional[PortAllocator] = None,
) -> RuntimeSession:
    """
    Build an unconnected session for the selected backend.

    Args:
        kind: "local", "docker" or "remote"
        spec: Who the session is for
        settings: Backend settings (image, remote url)
        timeouts: Provision and action timeouts
        ports: Allocator shared by every session in the process

    Raises:
        ValueError: Unknown kind or missing backend settings
    """
    settings = settings or RuntimeSettings()
    timeouts = timeouts or TimeoutSettings()
    common = dict(
        ports=ports,
        provision_timeout=timeouts.provision,
        action_timeout=timeouts.action,
    )
    if spec.image is None:
        spec.image = settings.image

    if kind == "local":
        return LocalRuntime(spec, **common)
    if kind == "docker":
        return DockerRuntime(spec, **common)
    if kind == "remote":
        if not settings.remote_url:
            raise ValueError("runtime.remote_url is required for the remote backend")
        return RemoteRuntime(
            spec,
            base_url=settings.remote_url,
            api_key=settings.remote_api_key,
            **common,
        )
    raise ValueError(f"Unknown runtime kind '{kind}', expected one of {RUNTIME_KINDS}")
