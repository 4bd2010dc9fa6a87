"""
Allocation Worker

Consumes PURCHASE_CREATED, asks the allocation service for a trainer and
emits TRAINER_ALLOCATED (correlationId = allocation id).

The allocation row is written by the allocation service, not here. A
successful RPC is not enough: the row must be readable with an active status
before the ledger row commits, otherwise the event stays unprocessed and is
retried (AllocationNotVisibleError).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, Optional

from shared.config.app_config import AppConfig
from shared.config.settings import ApplicationSettings, get_settings
from shared.exceptions.pipeline import AllocationNotVisibleError
from shared.models.event_envelope import EventEnvelope, EventType, PurchaseCreatedPayload, TrainerAllocatedPayload
from shared.models.fulfillment import AllocationRecord
from shared.models.scheduling import SchedulingHints, parse_date, session_count_from_metadata, utc_today
from shared.observability.metrics import start_metrics_server
from shared.services.allocation_client import AllocationClient
from shared.services.allocation_registry import AllocationRegistry
from shared.services.event_bus import EventPublisher
from shared.services.event_worker import EventWorker, Sleep, serve
from shared.services.postgres_store import PostgresStore
from shared.services.processed_event_registry import ProcessedEventRegistry
from shared.utils.app_logger import configure_logging
from shared.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class AllocationWorker(EventWorker):
    worker_name = AppConfig.ALLOCATION_WORKER
    handled_event_types = frozenset({EventType.PURCHASE_CREATED})

    def __init__(
        self,
        *,
        store: PostgresStore,
        client: Optional[AllocationClient] = None,
        settings: Optional[ApplicationSettings] = None,
        publisher: Optional[EventPublisher] = None,
        consumer: Any = None,
        allocations: Optional[AllocationRegistry] = None,
        ledger: Optional[ProcessedEventRegistry] = None,
        today: Callable[[], date] = utc_today,
        sleep: Sleep = asyncio.sleep,
    ):
        settings = settings or get_settings()
        super().__init__(
            topics=[settings.kafka.purchase_created_topic],
            group_id=settings.kafka.allocation_group,
            retry_policy=RetryPolicy.from_settings(settings.retry, "allocation"),
            settings=settings,
            publisher=publisher,
            consumer=consumer,
            sleep=sleep,
        )
        self.store = store
        self.client = client or AllocationClient(settings.allocation_service)
        self.allocations = allocations or AllocationRegistry()
        self.ledger = ledger or ProcessedEventRegistry()
        self._today = today

    async def on_startup(self) -> None:
        await self.store.connect()

    async def on_shutdown(self) -> None:
        await self.client.close()
        await self.store.close()

    def failure_context(self, envelope: EventEnvelope, exc: BaseException) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "studentId": envelope.payload.get("studentId"),
            "courseId": envelope.payload.get("courseId"),
            "purchaseId": envelope.payload.get("purchaseId"),
        }
        status_code = getattr(exc, "status_code", None)
        if status_code is not None:
            context["lastResponseStatus"] = status_code
        response_body = getattr(exc, "response_body", None)
        if response_body is not None:
            context["lastResponse"] = response_body
        return context

    async def handle(self, envelope: EventEnvelope) -> None:
        payload: PurchaseCreatedPayload = envelope.decode_payload()
        hints = SchedulingHints.from_metadata(payload.metadata)

        async with self.store.acquire() as conn:
            existing = await self.allocations.find_active(conn, payload.student_id, payload.course_id)
            already_processed = await self.ledger.is_processed(
                conn,
                correlation_id=envelope.correlation_id,
                event_type=EventType.PURCHASE_CREATED,
            )

        if existing is not None:
            logger.info(
                f"Active allocation {existing.allocation_id} already exists for student={payload.student_id} "
                f"course={payload.course_id}; re-emitting TRAINER_ALLOCATED"
            )
            await self._commit_and_emit(envelope, payload, hints, existing)
            return

        if already_processed:
            logger.warning(
                f"PURCHASE_CREATED {envelope.correlation_id} already processed but no active allocation exists; "
                f"acknowledging"
            )
            return

        assignment = await self.client.auto_assign(
            student_id=payload.student_id,
            course_id=payload.course_id,
            hints=hints,
            correlation_id=envelope.correlation_id,
        )

        async with self.store.acquire() as conn:
            allocation = await self.allocations.get(conn, assignment.allocation_id)
        if allocation is None or not allocation.is_active or not allocation.trainer_id:
            raise AllocationNotVisibleError(
                assignment.allocation_id,
                observed_status=allocation.status if allocation else None,
            )

        await self._commit_and_emit(envelope, payload, hints, allocation)

    def _trainer_allocated(
        self,
        payload: PurchaseCreatedPayload,
        hints: SchedulingHints,
        allocation: AllocationRecord,
    ) -> EventEnvelope:
        if not allocation.trainer_id:
            raise AllocationNotVisibleError(allocation.allocation_id, observed_status=allocation.status)

        merged = hints.merged_over(SchedulingHints.from_metadata(allocation.metadata))
        body = TrainerAllocatedPayload(
            allocation_id=allocation.allocation_id,
            trainer_id=allocation.trainer_id,
            student_id=allocation.student_id,
            course_id=allocation.course_id,
            session_count=session_count_from_metadata(allocation.metadata) or payload.tier,
            start_date=merged.start_date or self._today(),
            end_date=parse_date(allocation.metadata.get("endDate")),
        ).model_dump(mode="json", by_alias=True, exclude_none=True)
        body["schedulingHints"] = merged.to_metadata()

        return EventEnvelope.build(
            event_type=EventType.TRAINER_ALLOCATED,
            correlation_id=allocation.allocation_id,
            payload=body,
            source=self.worker_name,
            version=AppConfig.EVENT_SCHEMA_VERSION,
        )

    async def _commit_and_emit(
        self,
        envelope: EventEnvelope,
        payload: PurchaseCreatedPayload,
        hints: SchedulingHints,
        allocation: AllocationRecord,
    ) -> None:
        allocated = self._trainer_allocated(payload, hints, allocation)

        async with self.store.transaction() as conn:
            claim = await self.ledger.claim(conn, envelope)
            if not claim.already_processed:
                await self.ledger.complete(
                    conn,
                    correlation_id=envelope.correlation_id,
                    event_type=EventType.PURCHASE_CREATED,
                    payload={
                        "allocationId": allocation.allocation_id,
                        "trainerId": allocation.trainer_id,
                        "status": allocation.status,
                        "emittedEventId": allocated.event_id,
                    },
                )

        await self.publisher.publish(
            self.settings.kafka.trainer_allocated_topic,
            allocated,
            headers={"causationId": envelope.event_id},
        )


async def main():
    """Process entrypoint"""
    settings = get_settings()
    configure_logging(settings.observability.log_level, settings.observability.log_format)
    start_metrics_server(settings.observability.metrics_port)

    worker = AllocationWorker(store=PostgresStore(database=settings.database), settings=settings)
    await serve(worker)


if __name__ == "__main__":
    asyncio.run(main())
