from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from croniter import croniter
from opentelemetry import trace

from sniper.core import metrics
from sniper.core.errors import AuthenticationError, SessionError
from sniper.core.protection import BreakerRegistry
from sniper.schemas.admin import CycleReport, QueueCounts, StatsOut
from sniper.schemas.tasks import CLAIM_QUEUE, NOTIFICATION_QUEUE, TaskOptions
from sniper.services.browser import AutomationContext
from sniper.services.repository import Repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class SessionControl(Protocol):
    @property
    def state(self) -> Any: ...

    async def get_authenticated_context(self) -> AutomationContext: ...

    def invalidate(self) -> None: ...

    async def close(self) -> None: ...


class Discoverer(Protocol):
    async def discover(self) -> int: ...


class Worker(Protocol):
    def start(self) -> None: ...

    async def stop(self) -> None: ...


class SweepingCache(Protocol):
    def start(self) -> None: ...

    async def stop(self) -> None: ...


def validate_schedule(expression: str) -> str:
    expression = expression.strip()
    if len(expression.split()) != 5:
        raise ValueError(f"invalid cron expression, expected 5 fields: {expression!r}")
    try:
        croniter(expression)
    except (ValueError, KeyError) as exc:
        raise ValueError(f"invalid cron expression: {exc}") from exc
    return expression


def next_run_after(expression: str, from_time: datetime) -> datetime:
    return croniter(expression, from_time).get_next(datetime)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coordinator:
    def __init__(
        self,
        *,
        session: SessionControl,
        discoverer: Discoverer,
        repository: Repository,
        claims: Worker,
        breakers: BreakerRegistry,
        notifications: Worker | None = None,
        secret_cache: SweepingCache | None = None,
        schedule: str = "*/5 * * * *",
        run_initial_cycle: bool = True,
        claim_options: TaskOptions = TaskOptions(max_attempts=3, backoff_seconds=5.0),
        notification_options: TaskOptions = TaskOptions(max_attempts=3, backoff_seconds=2.0),
        finished_retention_seconds: int = 86400,
        closers: list[tuple[str, Callable[[], Awaitable[None]]]] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session = session
        self.discoverer = discoverer
        self.repository = repository
        self.claims = claims
        self.notifications = notifications
        self.secret_cache = secret_cache
        self.breakers = breakers
        self.schedule = validate_schedule(schedule)
        self.run_initial_cycle = run_initial_cycle
        self.routes: dict[str, TaskOptions] = {CLAIM_QUEUE: claim_options}
        if notifications is not None:
            self.routes[NOTIFICATION_QUEUE] = notification_options
        self.finished_retention_seconds = finished_retention_seconds
        self._closers = list(closers or [])
        self._clock = clock

        self.last_cycle: CycleReport | None = None
        self.next_run_at: datetime | None = None
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._schedule_task: asyncio.Task[None] | None = None
        self._initial_task: asyncio.Task[CycleReport] | None = None
        self._started = False
        self._shutdown = False

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.repository.ensure_schema()
        if self.secret_cache is not None:
            self.secret_cache.start()
        self.claims.start()
        if self.notifications is not None:
            self.notifications.start()

        self._stop_event.clear()
        self._schedule_task = asyncio.create_task(self._schedule_loop(), name="coordinator-schedule")
        if self.run_initial_cycle:
            self._initial_task = asyncio.create_task(self.run_cycle(), name="coordinator-initial-cycle")
        logger.info("coordinator started schedule=%s", self.schedule)

    async def trigger(self) -> CycleReport:
        logger.info("manual discovery cycle triggered")
        return await self.run_cycle()

    async def run_cycle(self) -> CycleReport:
        async with self._cycle_lock:
            started = time.perf_counter()
            started_at = self._clock()
            with tracer.start_as_current_span("coordinator.cycle") as span:
                report = await self._cycle(started, started_at)
                span.set_attribute("cycle.status", report.status)
                span.set_attribute("cycle.new_items", report.new_items)
                await self._purge()
            self.last_cycle = report
            return report

    async def shutdown(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        logger.info("coordinator shutting down")

        self._stop_event.set()
        await self._step("schedule", self._stop_schedule)
        await self._step("claim worker", self.claims.stop)
        if self.notifications is not None:
            await self._step("notification worker", self.notifications.stop)
        await self._step("session", self.session.close)
        if self.secret_cache is not None:
            await self._step("secret cache", self.secret_cache.stop)
        for name, closer in self._closers:
            await self._step(name, closer)
        await self._step("repository", self.repository.close)
        logger.info("coordinator shutdown complete")

    async def stats(self) -> StatsOut:
        queues = await self.repository.queue_counts()
        state = self.session.state
        return StatsOut(
            seen_items=await self.repository.seen_count(),
            staged_items=await self.repository.staged_count(),
            queues={name: QueueCounts(**counts) for name, counts in queues.items()},
            breakers=self.breakers.snapshot(),
            session_state=getattr(state, "value", str(state)),
            last_cycle=self.last_cycle,
            next_run_at=self.next_run_at,
        )

    async def _cycle(self, started: float, started_at: datetime) -> CycleReport:
        def report(status: str, *, new_items: int = 0, enqueued: int = 0, error: str | None = None) -> CycleReport:
            return CycleReport(
                status=status,
                new_items=new_items,
                enqueued=enqueued,
                duration_seconds=time.perf_counter() - started,
                error=error,
                started_at=started_at,
            )

        try:
            await self.session.get_authenticated_context()
        except SessionError as exc:
            logger.error("session unavailable, skipping cycle: %s", exc)
            return report("skipped", error=str(exc))

        try:
            new_items = await self.discoverer.discover()
        except AuthenticationError as exc:
            logger.error("catalog rejected the session; re-authenticating next cycle: %s", exc)
            self.session.invalidate()
            return report("failed", error=str(exc))
        except SessionError as exc:
            logger.error("session lost during discovery, skipping cycle: %s", exc)
            return report("skipped", error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.error("discovery cycle failed: %s", exc)
            return report("failed", error=str(exc))

        try:
            enqueued = await self._dispatch(new_items)
        except Exception as exc:  # noqa: BLE001
            logger.exception("failed to enqueue discovered items")
            return report("failed", new_items=new_items, error=str(exc))

        logger.info("discovery cycle completed new_items=%s enqueued=%s", new_items, enqueued)
        return report("completed", new_items=new_items, enqueued=enqueued)

    async def _dispatch(self, new_items: int) -> int:
        # Entries left behind by an interrupted cycle are picked up here too.
        limit = max(new_items, await self.repository.staged_count())
        if limit <= 0:
            return 0
        payloads = await self.repository.dispatch_staged(limit, self.routes)
        for queue in self.routes:
            metrics.queue_enqueued.add(len(payloads), {"queue_name": queue})
        return len(payloads)

    async def _purge(self) -> None:
        try:
            purged = await self.repository.purge_expired(finished_retention_seconds=self.finished_retention_seconds)
        except Exception:  # noqa: BLE001
            logger.exception("failed to purge expired pipeline state")
            return
        if any(purged.values()):
            logger.info(
                "purged expired state seen_items=%s locks=%s tasks=%s",
                purged.get("seen_items", 0),
                purged.get("locks", 0),
                purged.get("tasks", 0),
            )

    async def _schedule_loop(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock()
            self.next_run_at = next_run_after(self.schedule, now)
            delay = max(0.0, (self.next_run_at - now).total_seconds())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_cycle()
        self.next_run_at = None

    async def _stop_schedule(self) -> None:
        if self._schedule_task is not None:
            await self._schedule_task
            self._schedule_task = None
        if self._initial_task is not None:
            await self._initial_task
            self._initial_task = None
        async with self._cycle_lock:
            pass

    async def _step(self, name: str, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await action()
            logger.info("shutdown step complete: %s", name)
        except Exception:  # noqa: BLE001
            logger.exception("shutdown step failed: %s", name)
