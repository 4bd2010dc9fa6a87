"""
Purchase Worker

Consumes PURCHASE_CONFIRMED, creates the purchase record and emits
PURCHASE_CREATED (correlationId = purchase id).

Creation is race-free two ways:
- constraint path: `INSERT ... ON CONFLICT DO NOTHING` on the partial unique
  index `unique_active_purchase`;
- lock path: transaction-scoped advisory lock + `SELECT ... FOR UPDATE`,
  used while the index is missing (cached check) or after the constraint
  path aborted the transaction.

Redelivery after the commit (crash before the offset commit, or an emission
failure) takes the recovery path: the existing purchase is re-emitted with
the same deterministic event id and nothing is written.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from shared.config.app_config import AppConfig
from shared.config.settings import ApplicationSettings, get_settings
from shared.exceptions import TransientPipelineError
from shared.exceptions.pipeline import TRANSACTION_ABORTED_ERRORS
from shared.models.event_envelope import EventEnvelope, EventType, PurchaseConfirmedPayload, PurchaseCreatedPayload
from shared.models.fulfillment import PurchaseDraft, PurchaseRecord
from shared.models.scheduling import session_count_from_metadata
from shared.observability.metrics import start_metrics_server
from shared.services.event_bus import EventPublisher
from shared.services.event_worker import EventWorker, Sleep, serve
from shared.services.postgres_store import PostgresStore
from shared.services.processed_event_registry import ProcessedEventRegistry
from shared.services.purchase_registry import IndexExistenceCache, PurchaseRegistry
from shared.utils.app_logger import configure_logging
from shared.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PurchaseWorker(EventWorker):
    worker_name = AppConfig.PURCHASE_WORKER
    handled_event_types = frozenset({EventType.PURCHASE_CONFIRMED})

    def __init__(
        self,
        *,
        store: PostgresStore,
        settings: Optional[ApplicationSettings] = None,
        publisher: Optional[EventPublisher] = None,
        consumer: Any = None,
        purchases: Optional[PurchaseRegistry] = None,
        ledger: Optional[ProcessedEventRegistry] = None,
        index_cache: Optional[IndexExistenceCache] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        settings = settings or get_settings()
        super().__init__(
            topics=[settings.kafka.purchase_confirmed_topic],
            group_id=settings.kafka.purchase_group,
            retry_policy=RetryPolicy.from_settings(settings.retry, "purchase"),
            settings=settings,
            publisher=publisher,
            consumer=consumer,
            sleep=sleep,
        )
        self.store = store
        self.purchases = purchases or PurchaseRegistry()
        self.ledger = ledger or ProcessedEventRegistry()
        self.index_cache = index_cache or IndexExistenceCache(
            ttl_seconds=settings.purchase.purchase_index_cache_ttl,
            warning_interval_seconds=settings.purchase.purchase_index_warning_interval,
        )

    async def on_startup(self) -> None:
        await self.store.connect()

    async def on_shutdown(self) -> None:
        await self.store.close()

    def failure_context(self, envelope: EventEnvelope, exc: BaseException) -> Dict[str, Any]:
        return {
            "studentId": envelope.payload.get("studentId"),
            "courseId": envelope.payload.get("courseId"),
            "paymentId": envelope.payload.get("paymentId"),
        }

    def _draft(self, payload: PurchaseConfirmedPayload) -> PurchaseDraft:
        metadata = dict(payload.metadata)
        if payload.payment_id:
            metadata.setdefault("paymentId", payload.payment_id)
        if payload.tier is not None:
            tier = payload.tier
        else:
            tier = (
                session_count_from_metadata(payload.metadata)
                or self.settings.purchase.purchase_default_tier
            )
        return PurchaseDraft(
            student_id=payload.student_id,
            course_id=payload.course_id,
            tier=tier,
            metadata=metadata,
        )

    def _purchase_created(self, purchase: PurchaseRecord) -> EventEnvelope:
        return EventEnvelope.build(
            event_type=EventType.PURCHASE_CREATED,
            correlation_id=purchase.purchase_id,
            payload=PurchaseCreatedPayload(
                purchase_id=purchase.purchase_id,
                student_id=purchase.student_id,
                course_id=purchase.course_id,
                tier=purchase.tier,
                metadata=purchase.metadata,
            ),
            source=self.worker_name,
            version=AppConfig.EVENT_SCHEMA_VERSION,
        )

    async def handle(self, envelope: EventEnvelope) -> None:
        payload: PurchaseConfirmedPayload = envelope.decode_payload()
        draft = self._draft(payload)

        async with self.store.acquire() as conn:
            existing = await self.purchases.find_active(conn, draft.student_id, draft.course_id)
            already_processed = await self.ledger.is_processed(
                conn,
                correlation_id=envelope.correlation_id,
                event_type=EventType.PURCHASE_CONFIRMED,
            )
            if existing is None and already_processed:
                existing = await self.purchases.find_latest(conn, draft.student_id, draft.course_id)

        if existing is None and already_processed:
            logger.warning(
                f"PURCHASE_CONFIRMED {envelope.correlation_id} already processed but no purchase exists "
                f"for student={draft.student_id} course={draft.course_id}; acknowledging"
            )
            return

        if existing is not None:
            logger.info(
                f"Purchase {existing.purchase_id} already exists for student={draft.student_id} "
                f"course={draft.course_id}; re-emitting PURCHASE_CREATED"
            )
            if not already_processed:
                await self._record_recovery(envelope, existing)
            purchase: Optional[PurchaseRecord] = existing
        else:
            purchase = await self._create(envelope, draft)

        if purchase is None:
            logger.warning(f"No purchase to emit for {envelope.correlation_id}; acknowledging")
            return
        await self.publisher.publish(
            self.settings.kafka.purchase_created_topic,
            self._purchase_created(purchase),
            headers={"causationId": envelope.event_id},
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def _active_index_available(self) -> bool:
        cached = self.index_cache.get()
        if cached is None:
            async with self.store.acquire() as conn:
                cached = await self.purchases.active_index_exists(conn)
            self.index_cache.store(cached)
        if not cached and self.index_cache.should_warn():
            logger.warning(
                "Partial unique index unique_active_purchase is missing; "
                "purchases are created on the advisory-lock path"
            )
        return cached

    async def _create(self, envelope: EventEnvelope, draft: PurchaseDraft) -> Optional[PurchaseRecord]:
        if await self._active_index_available():
            try:
                return await self._create_with_constraint(envelope, draft)
            except TRANSACTION_ABORTED_ERRORS as e:
                self.index_cache.invalidate()
                logger.warning(
                    f"Constraint path aborted the transaction ({type(e).__name__}); "
                    f"retrying on the advisory-lock path (correlation_id={envelope.correlation_id})"
                )
        return await self._create_with_lock(envelope, draft)

    async def _create_with_constraint(
        self, envelope: EventEnvelope, draft: PurchaseDraft
    ) -> Optional[PurchaseRecord]:
        async with self.store.transaction() as conn:
            claim = await self.ledger.claim(conn, envelope)
            if claim.already_processed:
                return await self._winner(conn, draft)

            purchase = await self.purchases.insert_if_absent(conn, draft)
            if purchase is None:
                purchase = await self.purchases.find_active(conn, draft.student_id, draft.course_id)
                if purchase is None:
                    raise TransientPipelineError(
                        f"active purchase for student={draft.student_id} course={draft.course_id} "
                        f"conflicted but is not readable"
                    )
                logger.info(f"Concurrent writer created purchase {purchase.purchase_id}; reusing it")
            await self._complete(conn, envelope, purchase)
        return purchase

    async def _create_with_lock(self, envelope: EventEnvelope, draft: PurchaseDraft) -> Optional[PurchaseRecord]:
        async with self.store.transaction() as conn:
            claim = await self.ledger.claim(conn, envelope)
            if claim.already_processed:
                return await self._winner(conn, draft)

            await self.purchases.lock_student_course(conn, draft.student_id, draft.course_id)
            purchase = await self.purchases.find_active_for_update(conn, draft.student_id, draft.course_id)
            if purchase is None:
                purchase = await self.purchases.insert(conn, draft)
            await self._complete(conn, envelope, purchase)
        return purchase

    async def _winner(self, conn, draft: PurchaseDraft) -> Optional[PurchaseRecord]:
        """Purchase committed by the concurrent copy that claimed first."""
        purchase = await self.purchases.find_active(conn, draft.student_id, draft.course_id)
        return purchase or await self.purchases.find_latest(conn, draft.student_id, draft.course_id)

    async def _complete(self, conn, envelope: EventEnvelope, purchase: PurchaseRecord) -> None:
        created = self._purchase_created(purchase)
        await self.ledger.complete(
            conn,
            correlation_id=envelope.correlation_id,
            event_type=EventType.PURCHASE_CONFIRMED,
            payload={
                "purchaseId": purchase.purchase_id,
                "studentId": purchase.student_id,
                "courseId": purchase.course_id,
                "tier": purchase.tier,
                "emittedEventId": created.event_id,
            },
        )

    async def _record_recovery(self, envelope: EventEnvelope, purchase: PurchaseRecord) -> None:
        async with self.store.transaction() as conn:
            claim = await self.ledger.claim(conn, envelope)
            if not claim.already_processed:
                await self._complete(conn, envelope, purchase)


async def main():
    """Process entrypoint"""
    settings = get_settings()
    configure_logging(settings.observability.log_level, settings.observability.log_format)
    start_metrics_server(settings.observability.metrics_port)

    worker = PurchaseWorker(store=PostgresStore(database=settings.database), settings=settings)
    await serve(worker)


if __name__ == "__main__":
    asyncio.run(main())
