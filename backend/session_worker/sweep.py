"""
Periodic rolling-window top-up.

Pages through every active allocation, re-counts its future sessions and
refills the window of any allocation below the low-water mark. Runs under a
session-level advisory lock so only one session-worker instance sweeps at a
time.

The cadence and the session cap of an allocation come from the schedule the
session worker recorded in its TRAINER_ALLOCATED ledger row. Allocations
whose first delivery never committed (dead-lettered) fall back to the
purchase tier and metadata.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Callable, Dict, Optional

from shared.config.app_config import AppConfig
from shared.models.event_envelope import EventType
from shared.models.fulfillment import AllocationRecord
from shared.models.scheduling import utc_today
from shared.services.allocation_registry import ActiveAllocationCursor, AllocationRegistry
from shared.services.postgres_store import PostgresStore
from shared.services.processed_event_registry import ProcessedEventRegistry
from shared.services.purchase_registry import PurchaseRegistry
from shared.services.session_scheduler import RollingWindowScheduler, TopUpResult, WindowRequest, sweep_hints
from shared.utils.retry import RetryError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)


async def _top_up_allocation(
    store: PostgresStore,
    scheduler: RollingWindowScheduler,
    ledger: ProcessedEventRegistry,
    purchases: PurchaseRegistry,
    allocation: AllocationRecord,
    today: date,
) -> TopUpResult:
    async with store.transaction() as conn:
        result = await ledger.get_result(
            conn,
            correlation_id=allocation.allocation_id,
            event_type=EventType.TRAINER_ALLOCATED,
        )
        recorded = (result or {}).get("schedule")
        if not isinstance(recorded, dict):
            recorded = None
        purchase = await purchases.find_latest(conn, allocation.student_id, allocation.course_id)

        request = WindowRequest.from_allocation(allocation, recorded=recorded, purchase=purchase)
        policy = scheduler.policy_for(sweep_hints(allocation, recorded=recorded, purchase=purchase))
        return await scheduler.top_up(
            conn,
            request,
            policy,
            today=today,
            threshold=scheduler.low_water_mark,
        )


async def sweep_allocations(
    *,
    store: PostgresStore,
    scheduler: RollingWindowScheduler,
    allocations: AllocationRegistry,
    retry_policy: RetryPolicy,
    ledger: Optional[ProcessedEventRegistry] = None,
    purchases: Optional[PurchaseRegistry] = None,
    today: Optional[date] = None,
    limit: int = 500,
    lock_key: str = AppConfig.SESSION_SWEEP_LOCK_KEY,
    sleep: Callable = asyncio.sleep,
) -> Dict[str, int]:
    results = {"checked": 0, "topped_up": 0, "created": 0, "skipped": 0, "errors": 0}
    today = today or utc_today()
    ledger = ledger or ProcessedEventRegistry()
    purchases = purchases or PurchaseRegistry()

    async with store.try_advisory_lock(lock_key) as acquired:
        if not acquired:
            logger.info("Session sweep skipped; another instance holds the lock")
            results["skipped"] = 1
            return results

        cursor: Optional[ActiveAllocationCursor] = None
        while True:
            async with store.acquire() as conn:
                page = await allocations.list_active(conn, limit=limit, after=cursor)
            if not page:
                break

            for allocation in page:
                results["checked"] += 1
                try:
                    result = await with_retry(
                        lambda a=allocation: _top_up_allocation(store, scheduler, ledger, purchases, a, today),
                        retry_policy,
                        operation=f"session-sweep:{allocation.allocation_id}",
                        sleep=sleep,
                    )
                except RetryError as exc:
                    results["errors"] += 1
                    logger.warning(f"Session sweep failed for allocation {allocation.allocation_id}: {exc}")
                    continue
                if result.created:
                    results["topped_up"] += 1
                    results["created"] += result.created
                    logger.info(
                        f"Topped up allocation {allocation.allocation_id} "
                        f"(future {result.future_before} -> {result.future_after})"
                    )

            if len(page) < limit:
                break
            cursor = ActiveAllocationCursor.after(page[-1])

    logger.info(f"Session sweep finished: {results}")
    return results


async def run_session_sweep(
    *,
    store: PostgresStore,
    scheduler: RollingWindowScheduler,
    allocations: AllocationRegistry,
    retry_policy: RetryPolicy,
    ledger: Optional[ProcessedEventRegistry] = None,
    purchases: Optional[PurchaseRegistry] = None,
    interval_seconds: float = 21600,
    limit: int = 500,
    today: Callable[[], date] = utc_today,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Sweep once immediately, then every `interval_seconds` until `stop_event` is set."""
    stop_event = stop_event or asyncio.Event()
    while not stop_event.is_set():
        try:
            await sweep_allocations(
                store=store,
                scheduler=scheduler,
                allocations=allocations,
                retry_policy=retry_policy,
                ledger=ledger,
                purchases=purchases,
                today=today(),
                limit=limit,
            )
        except Exception as exc:
            logger.warning(f"Session sweep failed: {exc}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
