from __future__ import annotations

import logging
from typing import Any

from sniper.core import metrics
from sniper.jobs.worker import QueueRepository, TaskWorker
from sniper.schemas.tasks import NOTIFICATION_QUEUE, QueuedTask
from sniper.services.collaborators import NotificationPublisher

logger = logging.getLogger(__name__)


class NotificationQueue:
    def __init__(
        self,
        *,
        queue_repository: QueueRepository,
        publisher: NotificationPublisher,
        concurrency: int = 2,
        batch_size: int = 5,
        lease_seconds: int = 600,
        poll_interval_seconds: float = 1.0,
        reaper_interval_seconds: float = 15.0,
    ) -> None:
        self.publisher = publisher
        self.worker = TaskWorker(
            name="notifier",
            queue=NOTIFICATION_QUEUE,
            repository=queue_repository,
            handler=self.handle,
            concurrency=concurrency,
            batch_size=batch_size,
            lease_seconds=lease_seconds,
            poll_interval_seconds=poll_interval_seconds,
            reaper_interval_seconds=reaper_interval_seconds,
        )

    def start(self) -> None:
        self.worker.start()

    async def stop(self) -> None:
        await self.worker.stop()

    async def handle(self, task: QueuedTask) -> dict[str, Any]:
        try:
            await self.publisher.publish_notification(task.payload)
        except Exception:
            metrics.notifications_failed.add(1)
            raise
        logger.info("notification published item_id=%s", task.item_id)
        return {"published": True}
