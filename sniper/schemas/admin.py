from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CycleStatus = Literal["completed", "skipped", "failed", "busy"]


class CycleReport(BaseModel):
    status: CycleStatus
    new_items: int = 0
    enqueued: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    started_at: datetime | None = None


class QueueCounts(BaseModel):
    queued: int = 0
    claimed: int = 0
    done: int = 0
    failed: int = 0


class StatsOut(BaseModel):
    seen_items: int = 0
    staged_items: int = 0
    queues: dict[str, QueueCounts] = Field(default_factory=dict)
    breakers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    session_state: str
    last_cycle: CycleReport | None = None
    next_run_at: datetime | None = None
