from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from opentelemetry import trace

from sniper.core import metrics
from sniper.core.errors import LockContentionError
from sniper.core.telemetry import add_span_attributes
from sniper.jobs.worker import QueueRepository, TaskWorker
from sniper.schemas.tasks import CLAIM_QUEUE, ClaimOutcome, ClaimTask, QueuedTask
from sniper.services.browser import AutomationContext
from sniper.services.collaborators import ClaimAction, JobRecordStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class LockStore(Protocol):
    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool: ...

    async def release_lock(self, key: str, owner: str) -> bool: ...


class ContextSource(Protocol):
    async def get_authenticated_context(self) -> AutomationContext: ...


class ClaimQueue:
    def __init__(
        self,
        *,
        queue_repository: QueueRepository,
        locks: LockStore,
        records: JobRecordStore,
        session: ContextSource,
        action: ClaimAction,
        lock_ttl_seconds: int = 3600,
        concurrency: int = 3,
        batch_size: int = 5,
        lease_seconds: int = 600,
        poll_interval_seconds: float = 1.0,
        reaper_interval_seconds: float = 15.0,
        reaper_batch_size: int = 100,
    ) -> None:
        self.locks = locks
        self.records = records
        self.session = session
        self.action = action
        self.lock_ttl_seconds = lock_ttl_seconds
        self.worker = TaskWorker(
            name="applier",
            queue=CLAIM_QUEUE,
            repository=queue_repository,
            handler=self.handle,
            concurrency=concurrency,
            batch_size=batch_size,
            lease_seconds=lease_seconds,
            poll_interval_seconds=poll_interval_seconds,
            reaper_interval_seconds=reaper_interval_seconds,
            reaper_batch_size=reaper_batch_size,
        )

    def start(self) -> None:
        self.worker.start()

    async def stop(self) -> None:
        await self.worker.stop()

    async def handle(self, task: QueuedTask) -> dict[str, Any]:
        outcome, result = await self.process(ClaimTask.from_queued(task))
        return {"outcome": outcome.value, **(result or {})}

    async def process(self, claim: ClaimTask) -> tuple[ClaimOutcome, dict[str, Any] | None]:
        with tracer.start_as_current_span("claims.process"):
            add_span_attributes(
                {
                    "job.id": claim.item_id,
                    "job.title": claim.payload.get("title"),
                    "job.location": claim.payload.get("location"),
                    "task.attempt": claim.attempt,
                }
            )
            try:
                await self._acquire(claim)
            except LockContentionError:
                metrics.claims_skipped.add(1)
                logger.warning("item already being processed, skipping item_id=%s task_id=%s", claim.item_id, claim.task_id)
                return ClaimOutcome.SKIPPED, None

            metrics.claims_attempted.add(1)
            with metrics.record_duration(metrics.claim_duration):
                result = await self._claim(claim)
            metrics.claims_succeeded.add(1)
            logger.info("claimed item item_id=%s task_id=%s", claim.item_id, claim.task_id)
            return ClaimOutcome.CLAIMED, result

    async def _acquire(self, claim: ClaimTask) -> None:
        acquired = await self.locks.acquire_lock(claim.lock_key, claim.lock_owner, self.lock_ttl_seconds)
        if not acquired:
            raise LockContentionError(claim.lock_key)

    async def _claim(self, claim: ClaimTask) -> dict[str, Any] | None:
        try:
            await self.records.update_task_status(
                claim.item_id,
                "claiming",
                {"task_id": claim.task_id, "attempt": claim.attempt},
            )
            context = await self.session.get_authenticated_context()
            result = await self.action.perform_claim(claim, context)
            await self.records.update_task_status(claim.item_id, "claimed", {"claimed_at": _now_iso()})
            return result
        except Exception as exc:
            metrics.claims_failed.add(1, {"failure_reason": type(exc).__name__})
            await self._record_failure(claim, exc)
            await self._release(claim)
            raise

    async def _release(self, claim: ClaimTask) -> None:
        try:
            await self.locks.release_lock(claim.lock_key, claim.lock_owner)
        except Exception:  # noqa: BLE001
            logger.exception("failed to release claim lock item_id=%s", claim.item_id)

    async def _record_failure(self, claim: ClaimTask, exc: Exception) -> None:
        try:
            await self.records.update_task_status(
                claim.item_id,
                "failed",
                {"reason": str(exc), "failed_at": _now_iso(), "attempt": claim.attempt},
            )
        except Exception:  # noqa: BLE001
            logger.exception("failed to record claim failure item_id=%s", claim.item_id)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
