from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from opentelemetry import trace

from sniper.core import metrics
from sniper.core.errors import SchemaDriftError
from sniper.core.protection import BreakerOptions, BreakerRegistry, RetryPolicy, protect
from sniper.core.telemetry import add_span_attributes
from sniper.schemas.catalog import CatalogPage, DiscoveredItem, DiscoveryReport
from sniper.schemas.session import AuthTokens
from sniper.services.collaborators import JobRecordStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CATALOG_BREAKER = "catalog-api"
CATALOG_BREAKER_OPTIONS = BreakerOptions(failure_threshold=5, reset_timeout_seconds=60.0, timeout_seconds=30.0)


class CatalogSource(Protocol):
    async def fetch_page(self, access_token: str, variables: dict[str, Any]) -> CatalogPage: ...


class TokenSource(Protocol):
    def get_auth_tokens(self) -> AuthTokens: ...


class SeenRepository(Protocol):
    async def mark_seen_and_stage(
        self,
        items: list[DiscoveredItem],
        *,
        retention_seconds: int,
    ) -> list[DiscoveredItem]: ...


@dataclass(slots=True, frozen=True)
class SearchParams:
    location: str
    keywords: str
    radius_miles: int = 25
    sort: str = "recent"


class ResourceDiscoverer:
    def __init__(
        self,
        *,
        catalog: CatalogSource,
        tokens: TokenSource,
        repository: SeenRepository,
        records: JobRecordStore,
        breakers: BreakerRegistry,
        search: SearchParams,
        page_size: int = 100,
        page_delay_seconds: float = 0.5,
        retention_seconds: int = 30 * 24 * 60 * 60,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tokens = tokens
        self.repository = repository
        self.records = records
        self.search = search
        self.page_size = max(1, page_size)
        self.page_delay_seconds = page_delay_seconds
        self.retention_seconds = retention_seconds
        self.last_report: DiscoveryReport | None = None
        self._sleep = sleep
        self._fetch_page = protect(
            catalog.fetch_page,
            breaker=breakers.get(CATALOG_BREAKER, CATALOG_BREAKER_OPTIONS),
            policy=retry_policy or RetryPolicy(retries=3, min_delay=2.0),
            context="fetch-jobs-page",
            sleep=sleep,
        )

    async def discover(self) -> int:
        with tracer.start_as_current_span("discovery.discover"):
            metrics.poller_runs.add(1, {"status": "started"})
            try:
                candidates, report = await self._fetch_all()
                fresh = await self.repository.mark_seen_and_stage(candidates, retention_seconds=self.retention_seconds)
            except Exception as exc:
                metrics.poller_runs.add(1, {"status": "failed"})
                metrics.poller_errors.add(1, {"error_type": type(exc).__name__})
                if isinstance(exc, SchemaDriftError):
                    metrics.schema_drift_errors.add(1)
                    logger.error("catalog schema drift detected; query may need updating: %s", exc)
                logger.error("discovery failed: %s", exc)
                raise

            for item in fresh:
                await self._persist(item)

            report.new = len(fresh)
            self.last_report = report
            if fresh:
                metrics.new_items_discovered.add(len(fresh))
                logger.info("discovered new items count=%s", len(fresh))
            metrics.poller_runs.add(1, {"status": "completed"})
            add_span_attributes(
                {
                    "jobs.total": report.candidates,
                    "jobs.new": report.new,
                    "jobs.pages": report.pages,
                    "jobs.schema_drift": report.schema_drift,
                }
            )
            return len(fresh)

    async def _fetch_all(self) -> tuple[list[DiscoveredItem], DiscoveryReport]:
        access_token = self.tokens.get_auth_tokens().access_token
        report = DiscoveryReport()
        items: list[DiscoveredItem] = []
        offset = 0

        while True:
            try:
                page = await self._fetch_page(access_token, self._variables(offset))
            except SchemaDriftError as exc:
                if report.pages == 0:
                    raise
                report.schema_drift = True
                metrics.schema_drift_errors.add(1)
                logger.error(
                    "catalog schema drift after %s pages; keeping partial results: %s",
                    report.pages,
                    exc,
                )
                break

            report.pages += 1
            if page.invalid_jobs:
                report.invalid_jobs += page.invalid_jobs
                report.schema_drift = True
                metrics.schema_drift_errors.add(page.invalid_jobs)

            returned = len(page.jobs) + page.invalid_jobs
            if returned == 0:
                break
            items.extend(page.jobs)

            if page.next_offset is None or returned < self.page_size:
                break
            if page.next_offset <= offset:
                logger.warning("catalog nextOffset did not advance offset=%s next=%s", offset, page.next_offset)
                break
            offset = page.next_offset
            await self._sleep(self.page_delay_seconds)

        report.candidates = len(items)
        return items, report

    def _variables(self, offset: int) -> dict[str, Any]:
        return {
            "location": self.search.location,
            "radius": self.search.radius_miles,
            "sort": self.search.sort,
            "filters": {"keywords": self.search.keywords},
            "offset": offset,
            "limit": self.page_size,
        }

    async def _persist(self, item: DiscoveredItem) -> None:
        try:
            await self.records.persist_job_record(item)
        except Exception:  # noqa: BLE001
            logger.exception("failed to persist job record item_id=%s", item.id)
