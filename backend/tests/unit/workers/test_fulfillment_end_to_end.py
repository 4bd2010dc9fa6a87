"""
Whole chain against the in-memory store: every worker's output topic is fed
to the next worker, duplicates included.
"""

from datetime import date

import pytest

from allocation_worker.main import AllocationWorker
from cache_worker.main import CacheInvalidationWorker
from purchase_worker.main import PurchaseWorker
from session_worker.main import SessionWorker
from shared.models.event_envelope import EventEnvelope, EventType
from shared.services.purchase_registry import IndexExistenceCache
from shared.services.session_scheduler import RollingWindowScheduler
from shared.testing.fulfillment_doubles import FakeAllocationClient, FakeCacheStore, FakeClock

TODAY = date(2026, 3, 2)


@pytest.fixture
def pipeline(store, db, settings, publisher, purchases, allocations, sessions, ledger, sleep):
    cache = FakeCacheStore()
    cache.values.update({"home:S": "cached", "learning:S": "cached"})
    client = FakeAllocationClient(db, trainer_id="T1")
    workers = {
        "purchase": PurchaseWorker(
            store=store,
            settings=settings,
            publisher=publisher,
            purchases=purchases,
            ledger=ledger,
            index_cache=IndexExistenceCache(clock=FakeClock()),
            sleep=sleep,
        ),
        "allocation": AllocationWorker(
            store=store,
            client=client,
            settings=settings,
            publisher=publisher,
            allocations=allocations,
            ledger=ledger,
            today=lambda: TODAY,
            sleep=sleep,
        ),
        "session": SessionWorker(
            store=store,
            settings=settings,
            publisher=publisher,
            scheduler=RollingWindowScheduler(sessions, session=settings.session),
            allocations=allocations,
            ledger=ledger,
            today=lambda: TODAY,
            sleep=sleep,
        ),
        "cache": CacheInvalidationWorker(cache=cache, settings=settings, publisher=publisher, sleep=sleep),
    }
    return workers, cache, client


async def _drain(workers, publisher, settings, confirmed_values):
    """Deliver every message on every topic to its consumers, in order."""
    kafka = settings.kafka
    consumers = {
        kafka.purchase_confirmed_topic: [workers["purchase"]],
        kafka.purchase_created_topic: [workers["allocation"], workers["cache"]],
        kafka.trainer_allocated_topic: [workers["session"], workers["cache"]],
    }
    queue = [(kafka.purchase_confirmed_topic, value) for value in confirmed_values]
    delivered = 0
    while queue:
        topic, value = queue.pop(0)
        before = len(publisher.messages)
        for worker in consumers[topic]:
            await worker.process_message(value, topic=topic)
        queue.extend((m["topic"], m["value"]) for m in publisher.messages[before:] if m["topic"] in consumers)
        delivered += 1
    return delivered


def _confirmed():
    return EventEnvelope(
        correlation_id="pay-1",
        event_type=EventType.PURCHASE_CONFIRMED,
        payload={"studentId": "S", "courseId": "C", "tier": 10},
        source="payment-service",
    ).to_kafka_value()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_confirmed_purchase_is_fully_fulfilled(pipeline, db, publisher, settings):
    workers, cache, client = pipeline

    await _drain(workers, publisher, settings, [_confirmed()])

    assert len(db.active_purchases("S", "C")) == 1
    [allocation] = db.allocations.values()
    assert (allocation.student_id, allocation.course_id, allocation.status) == ("S", "C", "approved")
    assert len(db.sessions_for(allocation.allocation_id)) == 7
    assert cache.values == {}
    assert publisher.on(settings.kafka.dead_letter_topic) == []
    assert {et for _, et in db.processed_events} == {
        EventType.PURCHASE_CONFIRMED.value,
        EventType.PURCHASE_CREATED.value,
        EventType.TRAINER_ALLOCATED.value,
    }


@pytest.mark.unit
@pytest.mark.asyncio
async def test_duplicated_input_has_no_extra_effects(pipeline, db, publisher, settings):
    workers, cache, client = pipeline

    await _drain(workers, publisher, settings, [_confirmed(), _confirmed(), _confirmed()])

    assert len(db.purchases) == 1
    assert len(db.allocations) == 1
    assert len(client.calls) == 1
    [allocation] = db.allocations.values()
    assert len(db.sessions_for(allocation.allocation_id)) == 7
    assert len(db.processed_events) == 3
    assert publisher.on(settings.kafka.dead_letter_topic) == []
    emitted_ids = {e.event_id for e in publisher.envelopes(settings.kafka.purchase_created_topic)}
    assert len(emitted_ids) == 1
