"""Plan / task tracking for a run.

The plan is an ordered, append-only list of tasks whose status only moves
forward (pending -> active -> success | error). Every transition is also
recorded in a structured ExecutionLog; markdown is only a rendering of it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..errors import InvalidTaskTransition

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.ERROR)


_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.ACTIVE: 1,
    TaskStatus.SUCCESS: 2,
    TaskStatus.ERROR: 2,
}


@dataclass
class LogEntry:
    """One structured event in the execution log."""

    kind: str
    task_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "task_id": self.task_id,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


class ExecutionLog:
    """Append-only log of plan events (task added, status changed, reflection)."""

    def __init__(self):
        self._entries: List[LogEntry] = []

    def append(self, kind: str, task_id: Optional[str] = None, **detail: Any) -> LogEntry:
        entry = LogEntry(kind=kind, task_id=task_id, detail=detail)
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> List[LogEntry]:
        return list(self._entries)

    def transitions(self, task_id: str) -> List[TaskStatus]:
        """Ordered statuses a task has been moved to"""
        return [
            TaskStatus(e.detail["to"])
            for e in self._entries
            if e.kind == "status" and e.task_id == task_id
        ]

    def render_markdown(self) -> str:
        lines = []
        for e in self._entries:
            stamp = e.timestamp.strftime("%H:%M:%S")
            if e.kind == "status":
                lines.append(f"- {stamp} `{e.task_id}` {e.detail['from']} → {e.detail['to']}")
            elif e.kind == "task_added":
                lines.append(f"- {stamp} `{e.task_id}` added: {e.detail.get('description', '')}")
            else:
                text = e.detail.get("reason") or e.detail.get("text") or ""
                lines.append(f"- {stamp} {e.kind}: {text}".rstrip(": "))
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Task:
    """
    One unit of planned work.

    Attributes:
        id: Stable id within the plan ("task-1", "task-2", ...)
        description: What to do
        status: Current status, only ever moves forward
        source: "plan" for initial tasks, "reflection" for revisions
        superseded: Replaced by a reflection revision; not required for success
        result: Outcome reported when the task finished
    """
    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    source: str = "plan"
    superseded: bool = False
    result: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "source": self.source,
            "superseded": self.superseded,
            "result": self.result,
        }


class Plan:
    """
    Ordered task list for one run.

    Usage:
        plan = Plan.from_descriptions(["Create app.py", "Run the tests"])
        task = plan.current_task
        plan.set_status(task.id, TaskStatus.ACTIVE)
        plan.set_status(task.id, TaskStatus.SUCCESS, result="done")
    """

    def __init__(self, log: Optional[ExecutionLog] = None):
        self._tasks: List[Task] = []
        self.log = log or ExecutionLog()

    @classmethod
    def from_descriptions(cls, descriptions: Iterable[str], source: str = "plan") -> "Plan":
        plan = cls()
        plan.add_tasks(descriptions, source=source)
        return plan

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks)

    def get(self, task_id: str) -> Task:
        for task in self._tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)

    def add_tasks(self, descriptions: Iterable[str], source: str = "plan") -> List[Task]:
        """Append tasks at the end; existing order never changes."""
        added = []
        for description in descriptions:
            description = str(description).strip()
            if not description:
                continue
            task = Task(id=f"task-{len(self._tasks) + 1}", description=description, source=source)
            self._tasks.append(task)
            self.log.append("task_added", task.id, description=description, source=source)
            added.append(task)
        return added

    def set_status(self, task_id: str, status: TaskStatus, result: Optional[str] = None) -> bool:
        """
        Move a task forward.

        Returns:
            True if the status changed, False if it already had this status

        Raises:
            InvalidTaskTransition: The move would regress or leave a terminal status
        """
        task = self.get(task_id)
        if task.status == status:
            return False
        if task.status.is_terminal or status.rank < task.status.rank:
            raise InvalidTaskTransition(
                f"Task {task_id}: cannot move from {task.status.value} to {status.value}"
            )
        previous = task.status
        task.status = status
        if result is not None:
            task.result = result
        self.log.append("status", task_id, **{"from": previous.value, "to": status.value})
        logger.debug(f"[Plan] {task_id} {previous.value} -> {status.value}")
        return True

    def supersede_open_tasks(self, reason: str) -> List[Task]:
        """Close every non-terminal task as error, marking it replaced by a revision."""
        closed = []
        for task in self._tasks:
            if task.status.is_terminal:
                continue
            self.set_status(task.id, TaskStatus.ERROR, result=reason)
            task.superseded = True
            closed.append(task)
        return closed

    @property
    def current_task(self) -> Optional[Task]:
        """The active task, else the first pending one"""
        for task in self._tasks:
            if task.status == TaskStatus.ACTIVE:
                return task
        for task in self._tasks:
            if task.status == TaskStatus.PENDING:
                return task
        return None

    def all_succeeded(self) -> bool:
        required = [t for t in self._tasks if not t.superseded]
        return bool(required) and all(t.status == TaskStatus.SUCCESS for t in required)

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        for task in self._tasks:
            counts[task.status.value] += 1
        return counts

    def render_markdown(self) -> str:
        marks = {
            TaskStatus.PENDING: "[ ]",
            TaskStatus.ACTIVE: "[~]",
            TaskStatus.SUCCESS: "[x]",
            TaskStatus.ERROR: "[!]",
        }
        lines = []
        for task in self._tasks:
            line = f"- {marks[task.status]} {task.id}: {task.description}"
            if task.superseded:
                line += " (superseded)"
            lines.append(line)
        return "\n".join(lines)

    def to_list(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self._tasks]

    def __len__(self) -> int:
        return len(self._tasks)
