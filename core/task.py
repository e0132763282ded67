from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from time import time
from uuid import UUID, uuid4

from core.cancel import CancellationToken


class TaskStatus(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class Task:
    id: UUID
    command: str
    payload: dict
    status: TaskStatus
    timestamp: float
    token: CancellationToken = field(default_factory=CancellationToken)

    @classmethod
    def new(cls, command: str, payload: dict | None = None) -> "Task":
        return cls(
            id=uuid4(),
            command=command,
            payload=dict(payload or {}),
            status=TaskStatus.PENDING,
            timestamp=time(),
        )

    def cancel(self) -> None:
        self.token.cancel()
        if self.status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            self.status = TaskStatus.CANCELLED
