from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fakes import MutableClock, make_item
from sniper.jobs.lease_reaper import lease_expired, reap_expired_leases, should_requeue
from sniper.schemas.tasks import CLAIM_QUEUE, NOTIFICATION_QUEUE, QueuedTask, TaskOptions
from sniper.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    retry_delay_seconds,
    unique_by_id,
)
from sniper.services.store import InMemoryStore


def test_claim_complete_lifecycle() -> None:
    store = InMemoryStore()

    async def scenario() -> QueuedTask:
        task_id = await store.enqueue_task(CLAIM_QUEUE, "a", {"id": "a"}, TaskOptions(max_attempts=2))
        claimed = await store.claim_tasks(CLAIM_QUEUE, limit=5, lease_seconds=60)
        assert [task.id for task in claimed] == [task_id]
        assert claimed[0].attempt == 1
        assert await store.claim_tasks(CLAIM_QUEUE, limit=5, lease_seconds=60) == []
        await store.complete_task(task_id, {"outcome": "claimed"})
        return store.tasks[task_id]

    task = asyncio.run(scenario())
    assert task.status == "done"
    assert task.result == {"outcome": "claimed"}
    assert task.lease_expires_at is None


def test_failed_task_is_rescheduled_with_backoff_then_failed() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)

    async def scenario() -> list[str]:
        task_id = await store.enqueue_task(CLAIM_QUEUE, "a", {}, TaskOptions(max_attempts=2, backoff_seconds=5.0))
        await store.claim_tasks(CLAIM_QUEUE, limit=1, lease_seconds=60)
        statuses = [await store.fail_task(task_id, {"error": "boom"})]

        assert await store.claim_tasks(CLAIM_QUEUE, limit=1, lease_seconds=60) == []
        clock.advance(5.0)
        retried = await store.claim_tasks(CLAIM_QUEUE, limit=1, lease_seconds=60)
        assert retried[0].attempt == 2
        statuses.append(await store.fail_task(task_id, {"error": "boom"}))
        return statuses

    assert asyncio.run(scenario()) == ["queued", "failed"]


def test_final_failure_skips_remaining_attempts() -> None:
    store = InMemoryStore()

    async def scenario() -> str:
        task_id = await store.enqueue_task(CLAIM_QUEUE, "a", {}, TaskOptions(max_attempts=5))
        await store.claim_tasks(CLAIM_QUEUE, limit=1, lease_seconds=60)
        return await store.fail_task(task_id, {"error": "bad request"}, final=True)

    assert asyncio.run(scenario()) == "failed"


def test_outcomes_require_a_claimed_task() -> None:
    store = InMemoryStore()

    async def scenario() -> None:
        with pytest.raises(RepositoryNotFoundError):
            await store.complete_task("missing")
        task_id = await store.enqueue_task(CLAIM_QUEUE, "a", {})
        with pytest.raises(RepositoryConflictError):
            await store.fail_task(task_id, {"error": "x"})

    asyncio.run(scenario())


def test_expired_leases_are_requeued() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)

    async def scenario() -> int:
        await store.enqueue_task(CLAIM_QUEUE, "a", {})
        await store.enqueue_task(CLAIM_QUEUE, "b", {})
        await store.claim_tasks(CLAIM_QUEUE, limit=2, lease_seconds=30)
        assert await store.requeue_expired_tasks() == 0
        clock.advance(31.0)
        requeued = await reap_expired_leases(store, limit=10)
        again = await store.claim_tasks(CLAIM_QUEUE, limit=5, lease_seconds=30)
        assert {task.attempt for task in again} == {2}
        return requeued

    assert asyncio.run(scenario()) == 2


def test_lock_is_exclusive_until_ttl_and_reentrant_for_owner() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)

    async def scenario() -> list[bool]:
        return [
            await store.acquire_lock("claim:a", "task-1", 60),
            await store.acquire_lock("claim:a", "task-2", 60),
            await store.acquire_lock("claim:a", "task-1", 60),
        ]

    assert asyncio.run(scenario()) == [True, False, True]
    clock.advance(61.0)
    assert asyncio.run(store.acquire_lock("claim:a", "task-2", 60)) is True


def test_lock_release_requires_the_holding_owner() -> None:
    store = InMemoryStore()

    async def scenario() -> list[bool]:
        await store.acquire_lock("claim:a", "t1:1", 60)
        return [
            await store.release_lock("claim:a", "t1:2"),
            await store.acquire_lock("claim:a", "t1:2", 60),
            await store.release_lock("claim:a", "t1:1"),
            await store.acquire_lock("claim:a", "t1:2", 60),
        ]

    assert asyncio.run(scenario()) == [False, False, True, True]


def test_purge_drops_expired_state_and_old_finished_tasks() -> None:
    clock = MutableClock()
    store = InMemoryStore(clock=clock)

    async def scenario() -> tuple[dict[str, int], dict[str, int]]:
        await store.mark_seen_and_stage([make_item("old")], retention_seconds=60)
        await store.acquire_lock("claim:old", "t0:1", 60)
        done_id = await store.enqueue_task(CLAIM_QUEUE, "old", {"id": "old"})
        await store.claim_tasks(CLAIM_QUEUE, limit=1, lease_seconds=60)
        await store.complete_task(done_id, {"outcome": "claimed"})

        clock.advance(120.0)
        await store.mark_seen_and_stage([make_item("new")], retention_seconds=60)
        await store.acquire_lock("claim:new", "t1:1", 60)
        await store.enqueue_task(CLAIM_QUEUE, "new", {"id": "new"})
        early = await store.purge_expired(finished_retention_seconds=3600)

        clock.advance(3600.0)
        late = await store.purge_expired(finished_retention_seconds=3600)
        return early, late

    early, late = asyncio.run(scenario())
    assert early == {"seen_items": 1, "locks": 1, "tasks": 0}
    assert late == {"seen_items": 1, "locks": 1, "tasks": 1}
    assert list(store.seen) == []
    assert [task.item_id for task in store.tasks.values()] == ["new"]
    assert store.tasks[next(iter(store.tasks))].status == "queued"


def test_concurrent_lock_acquisition_has_one_winner() -> None:
    store = InMemoryStore()

    async def scenario() -> list[bool]:
        return await asyncio.gather(*(store.acquire_lock("claim:a", f"task-{n}", 60) for n in range(10)))

    assert sum(asyncio.run(scenario())) == 1


def test_dispatch_routes_each_staged_item_to_every_queue() -> None:
    store = InMemoryStore()
    routes = {
        CLAIM_QUEUE: TaskOptions(max_attempts=3, backoff_seconds=5.0),
        NOTIFICATION_QUEUE: TaskOptions(max_attempts=2, backoff_seconds=2.0),
    }

    async def scenario() -> list[dict]:
        await store.mark_seen_and_stage([make_item("a"), make_item("b"), make_item("c")], retention_seconds=60)
        return await store.dispatch_staged(2, routes)

    payloads = asyncio.run(scenario())
    assert [payload["id"] for payload in payloads] == ["a", "b"]
    assert asyncio.run(store.staged_count()) == 1

    counts = asyncio.run(store.queue_counts())
    assert counts[CLAIM_QUEUE]["queued"] == 2
    assert counts[NOTIFICATION_QUEUE]["queued"] == 2
    notification_tasks = [task for task in store.tasks.values() if task.queue == NOTIFICATION_QUEUE]
    assert {task.max_attempts for task in notification_tasks} == {2}


def test_staged_payload_carries_the_notification_fields() -> None:
    store = InMemoryStore()
    item = make_item("a", city="Leeds", state="West Yorkshire", applicationUrl="https://portal.example.test/apply/a")
    asyncio.run(store.mark_seen_and_stage([item], retention_seconds=60))

    payload = store.staged[0]
    assert payload["location"] == "Leeds, West Yorkshire"
    assert payload["applicationUrl"] == "https://portal.example.test/apply/a"
    assert "timestamp" in payload


def test_job_record_status_merges_metadata() -> None:
    store = InMemoryStore()

    async def scenario() -> dict:
        await store.persist_job_record(make_item("a"))
        await store.update_task_status("a", "claiming", {"attempt": 1})
        await store.update_task_status("a", "claimed", {"claimed_at": "now"})
        return store.job_records["a"]

    record = asyncio.run(scenario())
    assert record["status"] == "claimed"
    assert record["metadata"] == {"attempt": 1, "claimed_at": "now"}


def test_helpers() -> None:
    assert [item.id for item in unique_by_id([make_item("a"), make_item("a"), make_item("b")])] == ["a", "b"]
    assert retry_delay_seconds(1, 5.0, 600.0) == 5.0
    assert retry_delay_seconds(3, 5.0, 600.0) == 20.0
    assert retry_delay_seconds(20, 5.0, 600.0) == 600.0

    now = datetime.now(timezone.utc)
    job = {"status": "claimed", "lease_expires_at": (now - timedelta(seconds=5)).isoformat()}
    assert should_requeue(job, now=now)
    assert not should_requeue({**job, "status": "done"}, now=now)
    assert not lease_expired({"lease_expires_at": None}, now=now)
