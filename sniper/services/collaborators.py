"""Capabilities the pipeline consumes but does not specify.

Defaults here are deliberately thin: they let the process run end to end and
are replaced by real implementations through ``build_runtime``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from sniper.core import metrics
from sniper.core.errors import PermanentError
from sniper.schemas.catalog import DiscoveredItem
from sniper.schemas.tasks import ClaimTask
from sniper.services.browser import AutomationContext

logger = logging.getLogger(__name__)


class ChallengeSolver(Protocol):
    async def solve_challenge(self, site_context: dict[str, Any]) -> str: ...


class OneTimeCodeRetriever(Protocol):
    async def retrieve_one_time_code(self, window_seconds: int) -> str | None: ...


@dataclass(slots=True)
class LoginCapabilities:
    solve_challenge: Callable[[dict[str, Any]], Awaitable[str]]
    retrieve_one_time_code: Callable[[int], Awaitable[str | None]]
    one_time_code_window_seconds: int = 300


class LoginFlow(Protocol):
    async def run(self, context: AutomationContext, capabilities: LoginCapabilities) -> None: ...


class ClaimAction(Protocol):
    async def perform_claim(self, task: ClaimTask, context: AutomationContext) -> dict[str, Any] | None: ...


class JobRecordStore(Protocol):
    async def persist_job_record(self, item: DiscoveredItem) -> None: ...

    async def update_task_status(self, item_id: str, status: str, metadata: dict[str, Any] | None = None) -> None: ...


class NotificationPublisher(Protocol):
    async def publish_notification(self, item: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class DisabledChallengeSolver:
    async def solve_challenge(self, site_context: dict[str, Any]) -> str:
        raise PermanentError("challenge solving is not configured")


class NoOneTimeCode:
    async def retrieve_one_time_code(self, window_seconds: int) -> str | None:
        logger.info("one-time code retrieval is not configured window_seconds=%s", window_seconds)
        return None


class LoggingPublisher:
    async def publish_notification(self, item: dict[str, Any]) -> None:
        logger.info(
            "new item discovered id=%s title=%s location=%s url=%s",
            item.get("id"),
            item.get("title"),
            item.get("location"),
            item.get("applicationUrl"),
        )
        metrics.notifications_sent.add(1, {"channel": "log"})

    async def close(self) -> None:
        return None


class WebhookPublisher:
    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def publish_notification(self, item: dict[str, Any]) -> None:
        response = await self._client.post(self.url, json={"event": "item.discovered", "item": item})
        response.raise_for_status()
        metrics.notifications_sent.add(1, {"channel": "webhook"})

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
