"""
Port block allocation for runtime sessions.

Each (user, conversation) pair gets one slot. A slot maps to one execution
port, one inspection port and a contiguous range of app-preview ports, so
concurrent sessions never collide.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..constants import (
    APP_PORT_BASE,
    APP_PORT_SPAN,
    EXECUTION_PORT_BASE,
    INSPECTION_PORT_BASE,
    MAX_RUNTIME_SESSIONS,
)
from ..errors import RuntimeUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortBlock:
    """Ports reserved for one runtime session"""
    slot: int
    execution: int
    inspection: int
    app_start: int
    app_end: int  # exclusive

    @property
    def app_ports(self) -> List[int]:
        return list(range(self.app_start, self.app_end))

    def all_ports(self) -> List[int]:
        return [self.execution, self.inspection, *self.app_ports]

    def to_dict(self) -> Dict[str, object]:
        return {
            "execution": self.execution,
            "inspection": self.inspection,
            "app": [self.app_start, self.app_end],
        }


class PortAllocator:
    """
    Hands out non-overlapping port blocks keyed by (user_id, conversation_id).

    Acquiring twice for the same key returns the same block and takes a
    second hold on it; the block stays reserved until every hold is released.

    Usage:
        allocator = PortAllocator.get_instance()
        block = allocator.acquire("u1", "c1")
        ...
        allocator.release("u1", "c1")
    """

    _instance: Optional["PortAllocator"] = None
    _instance_lock = threading.Lock()

    def __init__(
        self,
        execution_base: int = EXECUTION_PORT_BASE,
        inspection_base: int = INSPECTION_PORT_BASE,
        app_base: int = APP_PORT_BASE,
        app_span: int = APP_PORT_SPAN,
        max_sessions: int = MAX_RUNTIME_SESSIONS,
    ):
        if app_span < 1 or max_sessions < 1:
            raise ValueError("app_span and max_sessions must be positive")
        ranges = [
            (execution_base, execution_base + max_sessions),
            (inspection_base, inspection_base + max_sessions),
            (app_base, app_base + max_sessions * app_span),
        ]
        for lo, hi in ranges:
            if lo < 1 or hi > 65536:
                raise ValueError(f"Port range {lo}-{hi} is outside 1-65535")
        ordered = sorted(ranges)
        for (_, prev_hi), (next_lo, _) in zip(ordered, ordered[1:]):
            if next_lo < prev_hi:
                raise ValueError("Execution, inspection and app port ranges overlap")

        self.execution_base = execution_base
        self.inspection_base = inspection_base
        self.app_base = app_base
        self.app_span = app_span
        self.max_sessions = max_sessions

        self._lock = threading.Lock()
        self._blocks: Dict[Tuple[str, str], PortBlock] = {}
        self._used_slots: set = set()
        self._holds: Dict[Tuple[str, str], int] = {}

    @classmethod
    def get_instance(cls) -> "PortAllocator":
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset allocator (for testing)"""
        with cls._instance_lock:
            cls._instance = None

    def acquire(self, user_id: str, conversation_id: str) -> PortBlock:
        """
        Reserve a block for a session.

        Raises:
            RuntimeUnavailable: Every slot is in use
        """
        key = (user_id, conversation_id)
        with self._lock:
            if key in self._blocks:
                self._holds[key] += 1
                return self._blocks[key]
            slot = next((s for s in range(self.max_sessions) if s not in self._used_slots), None)
            if slot is None:
                raise RuntimeUnavailable(
                    f"No free port block ({self.max_sessions} sessions already active)"
                )
            block = PortBlock(
                slot=slot,
                execution=self.execution_base + slot,
                inspection=self.inspection_base + slot,
                app_start=self.app_base + slot * self.app_span,
                app_end=self.app_base + (slot + 1) * self.app_span,
            )
            self._used_slots.add(slot)
            self._blocks[key] = block
            self._holds[key] = 1

        logger.debug(f"[Runtime] Ports for {user_id}/{conversation_id}: {block.to_dict()}")
        return block

    def release(self, user_id: str, conversation_id: str) -> bool:
        """
        Drop one hold on the key's block; the slot is freed with the last one.

        Returns False when the key holds nothing.
        """
        key = (user_id, conversation_id)
        with self._lock:
            holds = self._holds.get(key, 0)
            if holds == 0:
                return False
            if holds > 1:
                self._holds[key] = holds - 1
                return True
            del self._holds[key]
            block = self._blocks.pop(key)
            self._used_slots.discard(block.slot)
        return True

    def get(self, user_id: str, conversation_id: str) -> Optional[PortBlock]:
        return self._blocks.get((user_id, conversation_id))

    @property
    def in_use(self) -> int:
        return len(self._blocks)
