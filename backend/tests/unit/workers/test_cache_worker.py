import pytest

from cache_worker.main import CacheInvalidationWorker
from shared.models.event_envelope import EventEnvelope, EventType
from shared.services.event_worker import MessageOutcome
from shared.testing.fulfillment_doubles import FakeCacheStore


@pytest.fixture
def cache():
    store = FakeCacheStore()
    store.values.update({"home:S1": "{}", "learning:S1": "{}", "home:S2": "{}"})
    return store


@pytest.fixture
def worker(cache, settings, publisher, sleep):
    return CacheInvalidationWorker(cache=cache, settings=settings, publisher=publisher, sleep=sleep)


def _event(event_type, payload):
    return EventEnvelope.build(event_type=event_type, correlation_id="X1", payload=payload, source="test")


PURCHASE_CREATED = {"purchaseId": "P1", "studentId": "S1", "courseId": "C1", "tier": 10}
TRAINER_ALLOCATED = {"allocationId": "A1", "trainerId": "T1", "studentId": "S1", "courseId": "C1"}


@pytest.mark.unit
def test_subscribes_to_both_topics(worker, settings):
    assert worker.topics == [settings.kafka.purchase_created_topic, settings.kafka.trainer_allocated_topic]
    assert worker.group_id == settings.kafka.cache_group
    assert worker.critical is False


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event_type,payload",
    [(EventType.PURCHASE_CREATED, PURCHASE_CREATED), (EventType.TRAINER_ALLOCATED, TRAINER_ALLOCATED)],
)
async def test_invalidates_student_views(worker, cache, event_type, payload):
    outcome = await worker.process_message(_event(event_type, payload).to_kafka_value(), topic="any")

    assert outcome is MessageOutcome.PROCESSED
    assert cache.values == {"home:S2": "{}"}
    assert cache.deleted == ["home:S1", "learning:S1"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_redis_outage_is_logged_and_acknowledged(worker, cache, publisher, settings, sleep):
    cache.outage = True

    outcome = await worker.process_message(
        _event(EventType.PURCHASE_CREATED, PURCHASE_CREATED).to_kafka_value(), topic="purchase-created"
    )

    assert outcome is MessageOutcome.DROPPED
    assert cache.calls == settings.retry.cache_max_attempts
    assert len(sleep.delays) == settings.retry.cache_max_attempts - 1
    assert publisher.messages == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unexpected_event_is_dropped_not_dead_lettered(worker, cache, publisher):
    confirmed = _event(EventType.PURCHASE_CONFIRMED, {"studentId": "S1", "courseId": "C1"})

    outcome = await worker.process_message(confirmed.to_kafka_value(), topic="purchase-created")

    assert outcome is MessageOutcome.DROPPED
    assert cache.calls == 0
    assert publisher.messages == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_startup_tolerates_unreachable_redis(worker, cache, caplog):
    cache.outage = True

    await worker.on_startup()

    assert "Redis unreachable" in caplog.text
