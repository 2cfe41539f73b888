from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sniper.jobs.lease_reaper import should_requeue
from sniper.schemas.catalog import DiscoveredItem
from sniper.schemas.tasks import TASK_STATUSES, QueuedTask, TaskOptions
from sniper.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    retry_delay_seconds,
    unique_by_id,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local store with the same contract as ``PostgresRepository``.

    Every mutation runs under one ``asyncio.Lock`` so check-and-set operations
    stay atomic relative to other coroutines.
    """

    def __init__(
        self,
        *,
        retry_max_seconds: float = 600.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.retry_max_seconds = retry_max_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self.seen: dict[str, datetime] = {}
        self.staged: deque[dict[str, Any]] = deque()
        self.tasks: dict[str, QueuedTask] = {}
        self.locks: dict[str, tuple[str, datetime]] = {}
        self.job_records: dict[str, dict[str, Any]] = {}
        self.closed = False

    async def ensure_schema(self) -> None:
        return None

    async def ping(self) -> bool:
        return not self.closed

    async def close(self) -> None:
        self.closed = True

    async def mark_seen_and_stage(
        self,
        items: list[DiscoveredItem],
        *,
        retention_seconds: int,
    ) -> list[DiscoveredItem]:
        async with self._lock:
            now = self._clock()
            expires_at = now + timedelta(seconds=retention_seconds)
            fresh: list[DiscoveredItem] = []
            for item in unique_by_id(items):
                current = self.seen.get(item.id)
                if current is not None and current > now:
                    continue
                self.seen[item.id] = expires_at
                self.staged.append(item.to_payload(now))
                fresh.append(item)
            return fresh

    async def dispatch_staged(self, limit: int, routes: dict[str, TaskOptions]) -> list[dict[str, Any]]:
        async with self._lock:
            drained: list[dict[str, Any]] = []
            while self.staged and len(drained) < limit:
                payload = self.staged.popleft()
                for queue, options in routes.items():
                    self._add_task(queue, str(payload.get("id")), payload, options)
                drained.append(payload)
            return drained

    async def enqueue_task(
        self,
        queue: str,
        item_id: str,
        payload: dict[str, Any],
        options: TaskOptions | None = None,
    ) -> str:
        async with self._lock:
            return self._add_task(queue, item_id, payload, options or TaskOptions())

    def _add_task(self, queue: str, item_id: str, payload: dict[str, Any], options: TaskOptions) -> str:
        task_id = str(uuid4())
        now = self._clock()
        self.tasks[task_id] = QueuedTask(
            id=task_id,
            queue=queue,
            item_id=item_id,
            payload=dict(payload),
            max_attempts=max(1, options.max_attempts),
            backoff_seconds=max(0.0, options.backoff_seconds),
            next_run_at=now,
            created_at=now,
        )
        return task_id

    async def claim_tasks(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueuedTask]:
        async with self._lock:
            now = self._clock()
            due = sorted(
                (
                    task
                    for task in self.tasks.values()
                    if task.queue == queue
                    and task.status == "queued"
                    and (task.next_run_at is None or task.next_run_at <= now)
                ),
                key=lambda task: (task.next_run_at or now, task.created_at or now),
            )
            claimed: list[QueuedTask] = []
            for task in due[: max(0, limit)]:
                task.status = "claimed"
                task.attempt += 1
                task.lease_expires_at = now + timedelta(seconds=lease_seconds)
                claimed.append(_copy(task))
            return claimed

    async def complete_task(self, task_id: str, result: dict[str, Any] | None = None) -> None:
        async with self._lock:
            task = self._get_claimed(task_id)
            task.status = "done"
            task.result = result
            task.lease_expires_at = None
            task.finished_at = self._clock()

    async def fail_task(self, task_id: str, error: dict[str, Any], *, final: bool = False) -> str:
        async with self._lock:
            task = self._get_claimed(task_id)
            task.error = error
            task.lease_expires_at = None
            if final or task.exhausted:
                task.status = "failed"
                task.finished_at = self._clock()
            else:
                delay = retry_delay_seconds(task.attempt, task.backoff_seconds, self.retry_max_seconds)
                task.status = "queued"
                task.next_run_at = self._clock() + timedelta(seconds=delay)
            return task.status

    async def requeue_expired_tasks(self, limit: int = 100) -> int:
        async with self._lock:
            now = self._clock()
            expired = [task for task in self.tasks.values() if should_requeue(task, now=now)]
            expired.sort(key=lambda task: task.lease_expires_at or now)
            requeued = expired[: max(1, min(limit, 1000))]
            for task in requeued:
                task.status = "queued"
                task.lease_expires_at = None
                task.next_run_at = now
            return len(requeued)

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = self._clock()
            current = self.locks.get(key)
            if current is not None:
                current_owner, expires_at = current
                if expires_at > now and current_owner != owner:
                    return False
            self.locks[key] = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    async def release_lock(self, key: str, owner: str) -> bool:
        async with self._lock:
            current = self.locks.get(key)
            if current is None or current[0] != owner:
                return False
            del self.locks[key]
            return True

    async def purge_expired(self, *, finished_retention_seconds: int) -> dict[str, int]:
        async with self._lock:
            now = self._clock()
            cutoff = now - timedelta(seconds=max(0, finished_retention_seconds))
            seen = [item_id for item_id, expires_at in self.seen.items() if expires_at <= now]
            for item_id in seen:
                del self.seen[item_id]
            locks = [key for key, (_, expires_at) in self.locks.items() if expires_at <= now]
            for key in locks:
                del self.locks[key]
            tasks = [
                task.id
                for task in self.tasks.values()
                if task.status in ("done", "failed") and task.finished_at is not None and task.finished_at <= cutoff
            ]
            for task_id in tasks:
                del self.tasks[task_id]
            return {"seen_items": len(seen), "locks": len(locks), "tasks": len(tasks)}

    async def persist_job_record(self, item: DiscoveredItem) -> None:
        async with self._lock:
            self.job_records[item.id] = {
                "item": item.model_dump(by_alias=True),
                "status": "discovered",
                "metadata": {},
                "updated_at": self._clock(),
            }

    async def update_task_status(self, item_id: str, status: str, metadata: dict[str, Any] | None = None) -> None:
        async with self._lock:
            record = self.job_records.setdefault(item_id, {"item": None, "status": status, "metadata": {}})
            record["status"] = status
            record["metadata"] = {**record.get("metadata", {}), **(metadata or {})}
            record["updated_at"] = self._clock()

    async def seen_count(self) -> int:
        now = self._clock()
        return sum(1 for expires_at in self.seen.values() if expires_at > now)

    async def staged_count(self) -> int:
        return len(self.staged)

    async def queue_counts(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        for task in self.tasks.values():
            bucket = counts.setdefault(task.queue, {status: 0 for status in TASK_STATUSES})
            bucket[task.status] = bucket.get(task.status, 0) + 1
        return counts

    def _get_claimed(self, task_id: str) -> QueuedTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise RepositoryNotFoundError(f"task not found: {task_id}")
        if task.status != "claimed":
            raise RepositoryConflictError(f"task is not in claimed state: {task_id}")
        return task


def _copy(task: QueuedTask) -> QueuedTask:
    return QueuedTask(
        id=task.id,
        queue=task.queue,
        item_id=task.item_id,
        payload=dict(task.payload),
        status=task.status,
        attempt=task.attempt,
        max_attempts=task.max_attempts,
        backoff_seconds=task.backoff_seconds,
        next_run_at=task.next_run_at,
        lease_expires_at=task.lease_expires_at,
        result=task.result,
        error=task.error,
        created_at=task.created_at,
        finished_at=task.finished_at,
    )
