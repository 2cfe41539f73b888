from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

CLAIM_QUEUE = "claims"
NOTIFICATION_QUEUE = "notifications"

TaskStatus = Literal["queued", "claimed", "done", "failed"]
TASK_STATUSES = ("queued", "claimed", "done", "failed")


@dataclass(slots=True)
class QueuedTask:
    id: str
    queue: str
    item_id: str
    payload: dict[str, Any]
    status: str = "queued"
    attempt: int = 0
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    next_run_at: datetime | None = None
    lease_expires_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    created_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(slots=True, frozen=True)
class TaskOptions:
    max_attempts: int = 3
    backoff_seconds: float = 1.0


@dataclass(slots=True)
class ClaimTask:
    task_id: str
    item_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    max_attempts: int = 3

    @classmethod
    def from_queued(cls, task: QueuedTask) -> "ClaimTask":
        return cls(
            task_id=task.id,
            item_id=task.item_id,
            payload=dict(task.payload),
            attempt=task.attempt,
            max_attempts=task.max_attempts,
        )

    @property
    def lock_key(self) -> str:
        return f"claim:{self.item_id}"

    @property
    def lock_owner(self) -> str:
        return f"{self.task_id}:{self.attempt}"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    SKIPPED = "skipped"
