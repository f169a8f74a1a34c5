"""Planning strategies: turn a goal into the initial task list.

- single_shot: the goal itself is the only task
- local_only: the model produces ``{"tasks": [...]}`` through the completion channel
- server_assisted: a planning service produces the task list over HTTP
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from ..cancellation import CancelToken
from ..constants import DEFAULT_COMPLETION_RETRIES, DEFAULT_RETRY_DELAY
from ..errors import CompletionError, PlanningError
from ..llm.channel import CompletionChannel, DeltaSink
from . import prompts
from .tracker import Plan

logger = logging.getLogger(__name__)

MAX_PLAN_TASKS = 20


class PlanningMode(str, Enum):
    SINGLE_SHOT = "single_shot"
    SERVER_ASSISTED = "server_assisted"
    LOCAL_ONLY = "local_only"


def task_descriptions(obj: Any) -> Optional[List[str]]:
    """
    Extract task descriptions from a planner reply.

    Accepts ``{"tasks": ["...", ...]}`` or ``{"tasks": [{"description": "..."}, ...]}``.
    Returns None when the reply has no usable tasks.
    """
    if not isinstance(obj, dict):
        return None
    tasks = obj.get("tasks")
    if not isinstance(tasks, list):
        return None
    descriptions = []
    for item in tasks:
        if isinstance(item, dict):
            item = item.get("description") or item.get("task") or item.get("title")
        if isinstance(item, str) and item.strip():
            descriptions.append(item.strip())
    return descriptions[:MAX_PLAN_TASKS] or None


def _check_plan_reply(obj: Dict[str, Any]) -> Optional[str]:
    if task_descriptions(obj) is None:
        return "reply has no non-empty 'tasks' list"
    return None


class PlanningStrategy:
    """
    Builds the initial Plan for a run.

    Example:
        planner = PlanningStrategy(channel, server_url="http://planner:8080")
        plan = await planner.plan(goal, history, PlanningMode.LOCAL_ONLY, cancel)
    """

    def __init__(
        self,
        channel: Optional[CompletionChannel] = None,
        server_url: Optional[str] = None,
        retries: int = DEFAULT_COMPLETION_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.channel = channel
        self.server_url = server_url.rstrip("/") if server_url else None
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport

    async def plan(
        self,
        goal: str,
        history: Optional[List[Dict[str, str]]] = None,
        mode: PlanningMode = PlanningMode.SINGLE_SHOT,
        cancel: Optional[CancelToken] = None,
        sink: Optional[DeltaSink] = None,
    ) -> Plan:
        """
        Produce a non-empty plan.

        Raises:
            PlanningError: No usable task list could be produced
            CancellationRequested: The run was cancelled while planning
        """
        goal = (goal or "").strip()
        if not goal:
            raise PlanningError("Goal is empty")
        history = history or []
        cancel = cancel or CancelToken()
        mode = PlanningMode(mode)

        if mode == PlanningMode.SINGLE_SHOT:
            descriptions = [goal]
        elif mode == PlanningMode.LOCAL_ONLY:
            descriptions = await self._plan_with_model(goal, history, cancel, sink)
        else:
            descriptions = await self._plan_with_server(goal, history, cancel)

        logger.info(f"[Planning] {mode.value} plan with {len(descriptions)} task(s)")
        return Plan.from_descriptions(descriptions)

    async def _plan_with_model(
        self,
        goal: str,
        history: List[Dict[str, str]],
        cancel: CancelToken,
        sink: Optional[DeltaSink],
    ) -> List[str]:
        if self.channel is None:
            raise PlanningError("local_only planning needs a completion channel")
        try:
            reply = await self.channel.request_json(
                prompts.build_planning_messages(goal, history),
                sink=sink,
                cancel=cancel,
                validate=_check_plan_reply,
                purpose="planning",
            )
        except CompletionError as e:
            raise PlanningError(f"Model did not produce a usable plan: {e}") from e
        return task_descriptions(reply)

    async def _plan_with_server(
        self,
        goal: str,
        history: List[Dict[str, str]],
        cancel: CancelToken,
    ) -> List[str]:
        if not self.server_url:
            raise PlanningError("server_assisted planning needs planning.server_url")

        attempts = self.retries + 1
        last_error = ""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, attempts + 1):
                try:
                    response = await cancel.guard(
                        client.post(f"{self.server_url}/plan", json={"goal": goal, "history": history})
                    )
                    response.raise_for_status()
                    descriptions = task_descriptions(response.json())
                    if descriptions:
                        return descriptions
                    last_error = "planning server returned no tasks"
                except (httpx.HTTPError, ValueError) as e:
                    last_error = f"{type(e).__name__}: {e}"

                if attempt < attempts:
                    logger.warning(
                        f"[Planning] Server attempt {attempt}/{attempts} failed ({last_error}), "
                        f"retrying in {self.retry_delay}s"
                    )
                    await cancel.guard(asyncio.sleep(self.retry_delay))

        raise PlanningError(f"Planning server failed after {attempts} attempts: {last_error}")
