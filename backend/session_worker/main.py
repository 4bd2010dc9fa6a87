"""
Session Worker

Consumes TRAINER_ALLOCATED and fills the allocation's rolling window of
future sessions. A background sweep (see `session_worker.sweep`) keeps every
active allocation's window topped up as sessions move into the past.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import date
from typing import Any, Callable, Dict, Optional

from shared.config.app_config import AppConfig
from shared.config.settings import ApplicationSettings, get_settings
from shared.models.event_envelope import EventEnvelope, EventType, TrainerAllocatedPayload
from shared.models.scheduling import SchedulingHints, utc_today
from shared.observability.metrics import start_metrics_server
from shared.services.allocation_registry import AllocationRegistry
from shared.services.event_bus import EventPublisher
from shared.services.event_worker import EventWorker, Sleep, serve
from shared.services.postgres_store import PostgresStore
from shared.services.processed_event_registry import ProcessedEventRegistry
from shared.services.purchase_registry import PurchaseRegistry
from shared.services.session_scheduler import RollingWindowScheduler, WindowRequest, recorded_schedule
from shared.utils.app_logger import configure_logging
from shared.utils.retry import RetryPolicy

from session_worker.sweep import run_session_sweep

logger = logging.getLogger(__name__)


class SessionWorker(EventWorker):
    worker_name = AppConfig.SESSION_WORKER
    handled_event_types = frozenset({EventType.TRAINER_ALLOCATED})

    def __init__(
        self,
        *,
        store: PostgresStore,
        settings: Optional[ApplicationSettings] = None,
        publisher: Optional[EventPublisher] = None,
        consumer: Any = None,
        scheduler: Optional[RollingWindowScheduler] = None,
        allocations: Optional[AllocationRegistry] = None,
        ledger: Optional[ProcessedEventRegistry] = None,
        purchases: Optional[PurchaseRegistry] = None,
        today: Callable[[], date] = utc_today,
        sleep: Sleep = asyncio.sleep,
    ):
        settings = settings or get_settings()
        super().__init__(
            topics=[settings.kafka.trainer_allocated_topic],
            group_id=settings.kafka.session_group,
            retry_policy=RetryPolicy.from_settings(settings.retry, "session"),
            settings=settings,
            publisher=publisher,
            consumer=consumer,
            sleep=sleep,
        )
        self.store = store
        self.scheduler = scheduler or RollingWindowScheduler(session=settings.session)
        self.allocations = allocations or AllocationRegistry()
        self.ledger = ledger or ProcessedEventRegistry()
        self.purchases = purchases or PurchaseRegistry()
        self._today = today
        self._stop_event: Optional[asyncio.Event] = None
        self._sweep_task: Optional[asyncio.Task] = None

    async def on_startup(self) -> None:
        await self.store.connect()
        if self.settings.session.session_sweep_enabled:
            self._stop_event = asyncio.Event()
            self._sweep_task = asyncio.create_task(
                run_session_sweep(
                    store=self.store,
                    scheduler=self.scheduler,
                    allocations=self.allocations,
                    ledger=self.ledger,
                    purchases=self.purchases,
                    retry_policy=self.retry_policy,
                    interval_seconds=self.settings.session.session_sweep_interval_seconds,
                    limit=self.settings.session.session_sweep_batch_limit,
                    today=self._today,
                    stop_event=self._stop_event,
                )
            )

    async def on_shutdown(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self.store.close()

    def failure_context(self, envelope: EventEnvelope, exc: BaseException) -> Dict[str, Any]:
        return {
            "allocationId": envelope.payload.get("allocationId"),
            "studentId": envelope.payload.get("studentId"),
            "trainerId": envelope.payload.get("trainerId"),
        }

    async def handle(self, envelope: EventEnvelope) -> None:
        payload: TrainerAllocatedPayload = envelope.decode_payload()
        today = self._today()
        event_hints = SchedulingHints.from_metadata((payload.model_extra or {}).get("schedulingHints"))

        async with self.store.transaction() as conn:
            claim = await self.ledger.claim(conn, envelope)
            if claim.already_processed:
                return

            allocation = await self.allocations.get(conn, payload.allocation_id)
            allocation_hints = SchedulingHints.from_metadata(allocation.metadata if allocation else None)
            hints = event_hints.merged_over(allocation_hints)

            request = WindowRequest(
                allocation_id=payload.allocation_id,
                student_id=payload.student_id,
                trainer_id=payload.trainer_id,
                course_id=payload.course_id,
                start_date=payload.start_date or hints.start_date,
                session_count=payload.session_count or None,
                end_date=payload.end_date,
            )
            policy = self.scheduler.policy_for(hints)
            result = await self.scheduler.top_up(conn, request, policy, today=today)

            await self.ledger.complete(
                conn,
                correlation_id=envelope.correlation_id,
                event_type=EventType.TRAINER_ALLOCATED,
                payload={
                    "allocationId": payload.allocation_id,
                    "sessionsCreated": result.created,
                    "futureSessions": result.future_after,
                    "cadence": policy.cadence.value,
                    "schedule": recorded_schedule(request, policy),
                },
            )

        logger.info(
            f"Scheduled {result.created} sessions for allocation {payload.allocation_id} "
            f"(future={result.future_after}, window={self.scheduler.window_size}, cadence={policy.cadence.value})"
        )


async def main():
    """Process entrypoint"""
    settings = get_settings()
    configure_logging(settings.observability.log_level, settings.observability.log_format)
    start_metrics_server(settings.observability.metrics_port)

    worker = SessionWorker(store=PostgresStore(database=settings.database), settings=settings)
    await serve(worker)


if __name__ == "__main__":
    asyncio.run(main())
