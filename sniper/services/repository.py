from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

from sniper.schemas.catalog import DiscoveredItem
from sniper.schemas.tasks import TASK_STATUSES, QueuedTask, TaskOptions


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class Repository(Protocol):
    async def ensure_schema(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

    async def mark_seen_and_stage(
        self,
        items: list[DiscoveredItem],
        *,
        retention_seconds: int,
    ) -> list[DiscoveredItem]: ...

    async def dispatch_staged(self, limit: int, routes: dict[str, TaskOptions]) -> list[dict[str, Any]]: ...

    async def enqueue_task(
        self,
        queue: str,
        item_id: str,
        payload: dict[str, Any],
        options: TaskOptions | None = None,
    ) -> str: ...

    async def claim_tasks(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueuedTask]: ...

    async def complete_task(self, task_id: str, result: dict[str, Any] | None = None) -> None: ...

    async def fail_task(self, task_id: str, error: dict[str, Any], *, final: bool = False) -> str: ...

    async def requeue_expired_tasks(self, limit: int = 100) -> int: ...

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool: ...

    async def release_lock(self, key: str, owner: str) -> bool: ...

    async def purge_expired(self, *, finished_retention_seconds: int) -> dict[str, int]: ...

    async def persist_job_record(self, item: DiscoveredItem) -> None: ...

    async def update_task_status(self, item_id: str, status: str, metadata: dict[str, Any] | None = None) -> None: ...

    async def seen_count(self) -> int: ...

    async def staged_count(self) -> int: ...

    async def queue_counts(self) -> dict[str, dict[str, int]]: ...


SCHEMA_SQL = """
create table if not exists seen_items (
  item_id text primary key,
  expires_at timestamptz not null,
  first_seen_at timestamptz not null default now()
);

create table if not exists staged_items (
  id bigserial primary key,
  item_id text not null,
  payload jsonb not null,
  created_at timestamptz not null default now()
);

create table if not exists queue_tasks (
  id text primary key,
  queue text not null,
  item_id text not null,
  payload jsonb not null default '{}'::jsonb,
  status text not null default 'queued',
  attempt int not null default 0,
  max_attempts int not null default 3,
  backoff_seconds double precision not null default 1,
  next_run_at timestamptz not null default now(),
  lease_expires_at timestamptz,
  result jsonb,
  error jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  constraint queue_tasks_status_check check (status in ('queued', 'claimed', 'done', 'failed'))
);

create index if not exists queue_tasks_due_idx on queue_tasks (queue, status, next_run_at);
create index if not exists queue_tasks_lease_idx on queue_tasks (status, lease_expires_at);
create index if not exists queue_tasks_finished_idx on queue_tasks (status, updated_at);

create table if not exists idempotency_locks (
  key text primary key,
  owner text not null,
  expires_at timestamptz not null
);

create table if not exists job_records (
  item_id text primary key,
  item jsonb,
  status text not null,
  metadata jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        retry_max_seconds: float,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.retry_max_seconds = max(0.0, retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def ping(self) -> bool:
        pool = await self._get_pool()
        return await pool.fetchval("select 1") == 1

    async def mark_seen_and_stage(
        self,
        items: list[DiscoveredItem],
        *,
        retention_seconds: int,
    ) -> list[DiscoveredItem]:
        unique = unique_by_id(items)
        if not unique:
            return []

        by_id = {item.id: item for item in unique}
        now = datetime.now(timezone.utc)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    insert into seen_items (item_id, expires_at)
                    select candidate, now() + ($2::int * interval '1 second')
                    from unnest($1::text[]) as candidate
                    on conflict (item_id) do update
                    set expires_at = excluded.expires_at,
                        first_seen_at = now()
                    where seen_items.expires_at <= now()
                    returning item_id
                    """,
                    list(by_id),
                    retention_seconds,
                )
                accepted = {row["item_id"] for row in rows}
                fresh = [item for item in unique if item.id in accepted]
                if fresh:
                    await conn.executemany(
                        """
                        insert into staged_items (item_id, payload)
                        values ($1, $2::jsonb)
                        """,
                        [(item.id, json.dumps(item.to_payload(now))) for item in fresh],
                    )
                return fresh

    async def dispatch_staged(self, limit: int, routes: dict[str, TaskOptions]) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with drained as (
                      select id
                      from staged_items
                      order by id asc
                      limit $1
                      for update skip locked
                    )
                    delete from staged_items s
                    using drained d
                    where s.id = d.id
                    returning s.id, s.item_id, s.payload
                    """,
                    limit,
                )
                ordered = sorted(rows, key=lambda row: row["id"])
                tasks = [
                    (
                        str(uuid4()),
                        queue,
                        row["item_id"],
                        json.dumps(self._coerce_json_dict(row["payload"])),
                        max(1, options.max_attempts),
                        max(0.0, options.backoff_seconds),
                    )
                    for row in ordered
                    for queue, options in routes.items()
                ]
                if tasks:
                    await conn.executemany(
                        """
                        insert into queue_tasks (id, queue, item_id, payload, max_attempts, backoff_seconds)
                        values ($1, $2, $3, $4::jsonb, $5, $6)
                        """,
                        tasks,
                    )
        return [self._coerce_json_dict(row["payload"]) for row in ordered]

    async def enqueue_task(
        self,
        queue: str,
        item_id: str,
        payload: dict[str, Any],
        options: TaskOptions | None = None,
    ) -> str:
        options = options or TaskOptions()
        pool = await self._get_pool()
        task_id = str(uuid4())
        await pool.execute(
            """
            insert into queue_tasks (id, queue, item_id, payload, max_attempts, backoff_seconds)
            values ($1, $2, $3, $4::jsonb, $5, $6)
            """,
            task_id,
            queue,
            item_id,
            json.dumps(payload),
            max(1, options.max_attempts),
            max(0.0, options.backoff_seconds),
        )
        return task_id

    async def claim_tasks(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueuedTask]:
        if limit <= 0:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select id
                      from queue_tasks
                      where queue = $1
                        and status = 'queued'
                        and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit $2
                      for update skip locked
                    )
                    update queue_tasks t
                    set
                      status = 'claimed',
                      attempt = t.attempt + 1,
                      lease_expires_at = now() + ($3::int * interval '1 second'),
                      updated_at = now()
                    from due
                    where t.id = due.id
                    returning t.*
                    """,
                    queue,
                    limit,
                    lease_seconds,
                )
        return [self._task_row(row) for row in rows]

    async def complete_task(self, task_id: str, result: dict[str, Any] | None = None) -> None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update queue_tasks
            set
              status = 'done',
              result = $2::jsonb,
              lease_expires_at = null,
              updated_at = now()
            where id = $1 and status = 'claimed'
            returning id
            """,
            task_id,
            json.dumps(result) if result is not None else None,
        )
        if not row:
            await self._raise_missing_or_conflict(task_id)

    async def fail_task(self, task_id: str, error: dict[str, Any], *, final: bool = False) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    """
                    select status, attempt, max_attempts, backoff_seconds
                    from queue_tasks
                    where id = $1
                    for update
                    """,
                    task_id,
                )
                if not claimed:
                    raise RepositoryNotFoundError(f"task not found: {task_id}")
                if claimed["status"] != "claimed":
                    raise RepositoryConflictError(f"task is not in claimed state: {task_id}")

                attempt = int(claimed["attempt"])
                next_run_at: datetime | None = None
                if final or attempt >= int(claimed["max_attempts"]):
                    resolved_status = "failed"
                else:
                    delay = retry_delay_seconds(attempt, float(claimed["backoff_seconds"]), self.retry_max_seconds)
                    next_run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
                    resolved_status = "queued"

                await conn.execute(
                    """
                    update queue_tasks
                    set
                      status = $2,
                      error = $3::jsonb,
                      lease_expires_at = null,
                      next_run_at = coalesce($4::timestamptz, next_run_at),
                      updated_at = now()
                    where id = $1
                    """,
                    task_id,
                    resolved_status,
                    json.dumps(error),
                    next_run_at,
                )
                return resolved_status

    async def requeue_expired_tasks(self, limit: int = 100) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from queue_tasks
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update queue_tasks t
                    set
                      status = 'queued',
                      lease_expires_at = null,
                      next_run_at = now(),
                      updated_at = now()
                    from expired e
                    where t.id = e.id
                    returning t.id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into idempotency_locks (key, owner, expires_at)
            values ($1, $2, now() + ($3::int * interval '1 second'))
            on conflict (key) do update
            set owner = excluded.owner,
                expires_at = excluded.expires_at
            where idempotency_locks.expires_at <= now()
               or idempotency_locks.owner = excluded.owner
            returning key
            """,
            key,
            owner,
            ttl_seconds,
        )
        return row is not None

    async def release_lock(self, key: str, owner: str) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "delete from idempotency_locks where key = $1 and owner = $2 returning key",
            key,
            owner,
        )
        return row is not None

    async def purge_expired(self, *, finished_retention_seconds: int) -> dict[str, int]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                seen = await conn.fetch("delete from seen_items where expires_at <= now() returning item_id")
                locks = await conn.fetch("delete from idempotency_locks where expires_at <= now() returning key")
                tasks = await conn.fetch(
                    """
                    delete from queue_tasks
                    where status in ('done', 'failed')
                      and updated_at <= now() - ($1::int * interval '1 second')
                    returning id
                    """,
                    max(0, finished_retention_seconds),
                )
        return {"seen_items": len(seen), "locks": len(locks), "tasks": len(tasks)}

    async def persist_job_record(self, item: DiscoveredItem) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into job_records (item_id, item, status)
            values ($1, $2::jsonb, 'discovered')
            on conflict (item_id) do update
            set item = excluded.item,
                status = 'discovered',
                updated_at = now()
            """,
            item.id,
            item.model_dump_json(by_alias=True),
        )

    async def update_task_status(self, item_id: str, status: str, metadata: dict[str, Any] | None = None) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into job_records (item_id, status, metadata)
            values ($1, $2, $3::jsonb)
            on conflict (item_id) do update
            set status = excluded.status,
                metadata = job_records.metadata || excluded.metadata,
                updated_at = now()
            """,
            item_id,
            status,
            json.dumps(metadata or {}, default=str),
        )

    async def seen_count(self) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from seen_items where expires_at > now()"))

    async def staged_count(self) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from staged_items"))

    async def queue_counts(self) -> dict[str, dict[str, int]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select queue, status, count(*)::int as total
            from queue_tasks
            group by queue, status
            """
        )
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            bucket = counts.setdefault(row["queue"], {status: 0 for status in TASK_STATUSES})
            bucket[row["status"]] = int(row["total"])
        return counts

    async def _raise_missing_or_conflict(self, task_id: str) -> None:
        pool = await self._get_pool()
        exists = await pool.fetchval("select 1 from queue_tasks where id = $1", task_id)
        if not exists:
            raise RepositoryNotFoundError(f"task not found: {task_id}")
        raise RepositoryConflictError(f"task is not in claimed state: {task_id}")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SNIPER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _task_row(cls, row: asyncpg.Record) -> QueuedTask:
        return QueuedTask(
            id=row["id"],
            queue=row["queue"],
            item_id=row["item_id"],
            payload=cls._coerce_json_dict(row["payload"]),
            status=row["status"],
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            backoff_seconds=float(row["backoff_seconds"]),
            next_run_at=row["next_run_at"],
            lease_expires_at=row["lease_expires_at"],
            result=cls._coerce_json_dict(row["result"]) if row["result"] is not None else None,
            error=cls._coerce_json_dict(row["error"]) if row["error"] is not None else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def unique_by_id(items: Iterable[DiscoveredItem]) -> list[DiscoveredItem]:
    seen: set[str] = set()
    unique: list[DiscoveredItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


def retry_delay_seconds(attempt: int, backoff_seconds: float, maximum: float) -> float:
    return min(backoff_seconds * (2 ** max(0, attempt - 1)), maximum)
