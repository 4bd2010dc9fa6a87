"""
Cache Invalidation Worker

Consumes PURCHASE_CREATED and TRAINER_ALLOCATED and drops the student's
cached home/learning views. Best effort: a Redis outage is retried, then
logged, and the message is acknowledged either way. Nothing is written to
the processed-events ledger; deletes are idempotent on their own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from shared.config.app_config import AppConfig
from shared.config.settings import ApplicationSettings, get_settings
from shared.models.event_envelope import EventEnvelope, EventType
from shared.observability.metrics import start_metrics_server
from shared.services.cache_store import CacheStore
from shared.services.event_bus import EventPublisher
from shared.services.event_worker import EventWorker, Sleep, serve
from shared.utils.app_logger import configure_logging
from shared.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class CacheInvalidationWorker(EventWorker):
    worker_name = AppConfig.CACHE_WORKER
    handled_event_types = frozenset({EventType.PURCHASE_CREATED, EventType.TRAINER_ALLOCATED})
    critical = False

    def __init__(
        self,
        *,
        cache: Optional[CacheStore] = None,
        settings: Optional[ApplicationSettings] = None,
        publisher: Optional[EventPublisher] = None,
        consumer: Any = None,
        sleep: Sleep = asyncio.sleep,
    ):
        settings = settings or get_settings()
        super().__init__(
            topics=[settings.kafka.purchase_created_topic, settings.kafka.trainer_allocated_topic],
            group_id=settings.kafka.cache_group,
            retry_policy=RetryPolicy.from_settings(settings.retry, "cache"),
            settings=settings,
            publisher=publisher,
            consumer=consumer,
            sleep=sleep,
        )
        self.cache = cache or CacheStore(settings.redis)

    async def on_startup(self) -> None:
        if not await self.cache.ping():
            logger.warning("Redis unreachable at startup; invalidations will be retried per message")

    async def on_shutdown(self) -> None:
        await self.cache.close()

    async def handle(self, envelope: EventEnvelope) -> None:
        payload = envelope.decode_payload()
        await self.cache.invalidate_student(payload.student_id)


async def main():
    """Process entrypoint"""
    settings = get_settings()
    configure_logging(settings.observability.log_level, settings.observability.log_format)
    start_metrics_server(settings.observability.metrics_port)

    worker = CacheInvalidationWorker(settings=settings)
    await serve(worker)


if __name__ == "__main__":
    asyncio.run(main())
