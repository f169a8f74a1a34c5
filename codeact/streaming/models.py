"""
CodeAct Streaming Models - Run messages delivered to the caller

Every user-visible step of a run is one RunMessage:
- tool calls and their results (``action_type`` = tool name)
- plan and task status updates, reflections, the summary
- the terminal ``run_end`` message
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class MessageStatus(str, Enum):
    """Status carried by a run message"""
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class MessageKind:
    """``action_type`` values for messages that are not tool calls"""
    PLAN = "plan"
    TASK_STATUS = "task_status"
    REFLECTION = "reflection"
    SUMMARY = "summary"
    RUN_END = "run_end"
    COMPLETION_ERROR = "completion_error"


@dataclass
class RunMessage:
    """
    One step of a run as seen by the caller.

    Attributes:
        uuid: Message id. For tool messages this is the action's correlation id,
            so the pending call and its result share it.
        action_type: Tool name or a MessageKind value
        status: pending / success / error
        content: Human-readable text
        payload: Structured data (tool arguments, plan tasks, ...)
        task_id: Task the message belongs to, if any
        metadata: Free-form extras (run state, error type, ...)
        file_path: Workspace file the message refers to, if any
        sequence: Position in the run's stream, assigned on emit
        timestamp: When the message was emitted
    """
    action_type: str
    status: MessageStatus
    content: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    task_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    file_path: Optional[str] = None
    uuid: str = field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.action_type == MessageKind.RUN_END

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for serialization"""
        return {
            "uuid": self.uuid,
            "action_type": self.action_type,
            "status": self.status.value,
            "content": self.content,
            "payload": self.payload,
            "task_id": self.task_id,
            "metadata": self.metadata,
            "file_path": self.file_path,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunMessage":
        """Create message from dictionary"""
        return cls(
            uuid=data["uuid"],
            action_type=data["action_type"],
            status=MessageStatus(data["status"]),
            content=data.get("content", ""),
            payload=data.get("payload") or {},
            task_id=data.get("task_id"),
            metadata=data.get("metadata") or {},
            file_path=data.get("file_path"),
            sequence=data.get("sequence", 0),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )
