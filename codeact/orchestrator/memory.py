"""Run memory: the append-only context fed back to the model.

Memory holds conversation turns, (Action, Observation) pairs and loop notes
in the order they happened. ``to_messages`` renders it as chat messages;
observations of memorized tools stay verbatim, older observations of other
tools are reduced to a one-line acknowledgement.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from ..tools.models import ToolResult, ToolStatus


@dataclass(frozen=True)
class Action:
    """A tool call requested by the model. Immutable once created."""

    action_type: str
    arguments: Dict[str, Any]
    task_id: Optional[str] = None
    thought: str = ""
    uuid: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "action_type": self.action_type,
            "arguments": self.arguments,
            "task_id": self.task_id,
            "thought": self.thought,
        }


@dataclass(frozen=True)
class Observation:
    """The single result of one Action; ``uuid`` equals the Action's uuid."""

    uuid: str
    status: ToolStatus
    content: str
    payload: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    file_path: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.status == ToolStatus.ERROR

    @classmethod
    def from_result(cls, action: Action, result: ToolResult) -> "Observation":
        metadata = {**result.metadata, "action_type": action.action_type, "correlation_id": action.uuid}
        return cls(
            uuid=action.uuid,
            status=result.status,
            content=result.content,
            payload=result.data,
            metadata=metadata,
            file_path=result.file_path,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "status": self.status.value,
            "content": self.content,
            "payload": self.payload,
            "metadata": self.metadata,
            "file_path": self.file_path,
        }


@dataclass(frozen=True)
class Turn:
    role: str
    content: str


@dataclass(frozen=True)
class Step:
    action: Action
    observation: Observation
    memorized: bool = False


@dataclass(frozen=True)
class Note:
    """
    Loop feedback for the model (format errors, reflection outcomes).

    ``failure`` is set when the note stands for a failed iteration that
    produced no action, and holds the raw error text.
    """

    content: str
    failure: Optional[str] = None


Entry = Union[Turn, Step, Note]


def elide(step: Step) -> str:
    obs = step.observation
    return (
        f"[{step.action.action_type} {obs.status.value}; "
        f"output elided ({len(obs.content)} chars)]"
    )


class Memory:
    """
    Ordered, append-only run context.

    Example:
        memory = Memory(history=[{"role": "user", "content": "earlier request"}])
        memory.record(action, observation, memorized=False)
        messages = memory.to_messages()
    """

    def __init__(self, history: Optional[List[Dict[str, str]]] = None):
        self._entries: List[Entry] = []
        for turn in history or []:
            self.add_turn(turn.get("role", "user"), turn.get("content", ""))

    def add_turn(self, role: str, content: str) -> None:
        self._entries.append(Turn(role=role, content=content))

    def add_note(self, content: str, failure: Optional[str] = None) -> None:
        self._entries.append(Note(content=content, failure=failure))

    def record(self, action: Action, observation: Observation, memorized: bool = False) -> Step:
        """Append one Action with its Observation."""
        if observation.uuid != action.uuid:
            raise ValueError(f"Observation {observation.uuid} does not belong to action {action.uuid}")
        if any(isinstance(e, Step) and e.action.uuid == action.uuid for e in self._entries):
            raise ValueError(f"Action {action.uuid} already has an observation")
        step = Step(action=action, observation=observation, memorized=memorized)
        self._entries.append(step)
        return step

    @property
    def entries(self) -> List[Entry]:
        return list(self._entries)

    @property
    def steps(self) -> List[Step]:
        return [e for e in self._entries if isinstance(e, Step)]

    @property
    def actions(self) -> List[Action]:
        return [s.action for s in self.steps]

    @property
    def observations(self) -> List[Observation]:
        return [s.observation for s in self.steps]

    def tail(self, n: int) -> List[Step]:
        """The last ``n`` steps"""
        return self.steps[-n:] if n > 0 else []

    def recent_failures(self, n: int) -> List[Union[Step, Note]]:
        """
        The trailing run of failed iterations, oldest first, at most ``n``.

        Failed steps and failure notes both count; a successful step or a
        plain note ends the run.
        """
        found: List[Union[Step, Note]] = []
        for entry in reversed(self._entries):
            if len(found) >= n:
                break
            if isinstance(entry, Step) and entry.observation.is_error:
                found.append(entry)
            elif isinstance(entry, Note) and entry.failure is not None:
                found.append(entry)
            elif isinstance(entry, (Step, Note)):
                break
        found.reverse()
        return found

    def to_messages(self) -> List[Dict[str, Any]]:
        """
        Render as OpenAI-style chat messages.

        Each step becomes an assistant message carrying the tool call and a
        ``tool`` message carrying the result. Only the latest step and
        memorized steps keep their full result text.
        """
        steps = self.steps
        last_uuid = steps[-1].action.uuid if steps else None

        messages: List[Dict[str, Any]] = []
        for entry in self._entries:
            if isinstance(entry, Turn):
                messages.append({"role": entry.role, "content": entry.content})
            elif isinstance(entry, Note):
                messages.append({"role": "user", "content": entry.content})
            else:
                action = entry.action
                messages.append({
                    "role": "assistant",
                    "content": action.thought or None,
                    "tool_calls": [{
                        "id": action.uuid,
                        "type": "function",
                        "function": {
                            "name": action.action_type,
                            "arguments": json.dumps(action.arguments, ensure_ascii=False),
                        },
                    }],
                })
                keep = entry.memorized or action.uuid == last_uuid
                messages.append({
                    "role": "tool",
                    "tool_call_id": action.uuid,
                    "content": entry.observation.content if keep else elide(entry),
                })
        return messages

    def pairs(self) -> List[Tuple[Action, Observation]]:
        return [(s.action, s.observation) for s in self.steps]

    def __len__(self) -> int:
        return len(self._entries)
