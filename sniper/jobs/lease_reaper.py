from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from sniper.schemas.tasks import QueuedTask

logger = logging.getLogger(__name__)


class LeaseRepository(Protocol):
    async def requeue_expired_tasks(self, limit: int = 100) -> int: ...


def lease_expired(task: QueuedTask | dict[str, Any], now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = task.get("lease_expires_at") if isinstance(task, dict) else task.lease_expires_at
    if not lease:
        return False

    if isinstance(lease, str):
        lease = datetime.fromisoformat(lease.replace("Z", "+00:00"))

    return lease <= now


def should_requeue(task: QueuedTask | dict[str, Any], now: datetime | None = None) -> bool:
    status = task.get("status") if isinstance(task, dict) else task.status
    return status == "claimed" and lease_expired(task, now=now)


async def reap_expired_leases(repository: LeaseRepository, *, limit: int) -> int:
    requeued = await repository.requeue_expired_tasks(limit=limit)
    if requeued:
        logger.info("requeued expired leases: %s", requeued)
    return requeued
