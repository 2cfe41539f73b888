from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from opentelemetry import trace

from sniper.core import metrics
from sniper.core.protection import is_permanent
from sniper.jobs.lease_reaper import reap_expired_leases
from sniper.schemas.tasks import QueuedTask

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TaskHandler = Callable[[QueuedTask], Awaitable[dict[str, Any] | None]]


class QueueRepository(Protocol):
    async def claim_tasks(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueuedTask]: ...

    async def complete_task(self, task_id: str, result: dict[str, Any] | None = None) -> None: ...

    async def fail_task(self, task_id: str, error: dict[str, Any], *, final: bool = False) -> str: ...

    async def requeue_expired_tasks(self, limit: int = 100) -> int: ...


class TaskWorker:
    """Consumes one repository-backed queue with bounded concurrency.

    Claim batches never exceed the free handler slots, so claimed tasks do not
    sit waiting on the semaphore while their leases run down.
    """

    def __init__(
        self,
        *,
        name: str,
        queue: str,
        repository: QueueRepository,
        handler: TaskHandler,
        concurrency: int = 3,
        batch_size: int = 5,
        lease_seconds: int = 600,
        poll_interval_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        reaper_interval_seconds: float = 15.0,
        reaper_batch_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.queue = queue
        self.repository = repository
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.batch_size = max(1, batch_size)
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.reaper_interval_seconds = reaper_interval_seconds
        self.reaper_batch_size = reaper_batch_size
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._last_reap_at: float | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._run(), name=f"{self.name}-worker")
        logger.info("worker started name=%s queue=%s concurrency=%s", self.name, self.queue, self.concurrency)

    async def stop(self) -> None:
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        await self.join()
        logger.info("worker stopped name=%s", self.name)

    async def join(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def run_once(self) -> int:
        await self._maybe_reap()
        capacity = self.concurrency - len(self._in_flight)
        if capacity <= 0:
            return 0

        tasks = await self.repository.claim_tasks(
            self.queue,
            limit=min(self.batch_size, capacity),
            lease_seconds=self.lease_seconds,
        )
        for task in tasks:
            runner = asyncio.create_task(self._process(task), name=f"{self.name}-{task.id}")
            self._in_flight.add(runner)
            runner.add_done_callback(self._in_flight.discard)
        return len(tasks)

    async def _run(self) -> None:
        backoff = self.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as span:
                    span.set_attribute("worker.name", self.name)
                    started = await self.run_once()
                if started == 0:
                    await self._wait(self.poll_interval_seconds)
                backoff = self.poll_interval_seconds
            except Exception as exc:  # noqa: BLE001
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker iteration failed name=%s: %s; retry in %.1fs", self.name, exc, sleep_for)
                await self._wait(sleep_for)
                backoff = sleep_for

    async def _process(self, task: QueuedTask) -> None:
        async with self._semaphore:
            metrics.workers_active.add(1, {"worker_type": self.name})
            try:
                with tracer.start_as_current_span("worker.process_task") as span:
                    span.set_attribute("task.id", task.id)
                    span.set_attribute("task.queue", task.queue)
                    span.set_attribute("task.item_id", task.item_id)
                    span.set_attribute("task.attempt", task.attempt)
                    await self._execute(task)
            except Exception:  # noqa: BLE001
                logger.exception("failed to record task outcome name=%s task_id=%s", self.name, task.id)
            finally:
                metrics.workers_active.add(-1, {"worker_type": self.name})

    async def _execute(self, task: QueuedTask) -> None:
        try:
            result = await self.handler(task)
        except Exception as exc:
            final = is_permanent(exc)
            status = await self.repository.fail_task(
                task.id,
                {"error": str(exc), "type": type(exc).__name__, "attempt": task.attempt},
                final=final,
            )
            logger.error(
                "task failed name=%s task_id=%s item_id=%s attempt=%s/%s next_status=%s error=%s",
                self.name,
                task.id,
                task.item_id,
                task.attempt,
                task.max_attempts,
                status,
                exc,
            )
            return

        await self.repository.complete_task(task.id, result)

    async def _maybe_reap(self) -> None:
        now = self._clock()
        if self._last_reap_at is not None and now - self._last_reap_at < self.reaper_interval_seconds:
            return
        self._last_reap_at = now
        await reap_expired_leases(self.repository, limit=self.reaper_batch_size)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
