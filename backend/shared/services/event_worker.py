"""
Worker runtime shared by every fulfillment worker.

Per message:
1. decode the envelope (malformed JSON / unknown eventType is fatal);
2. reject event types the worker does not consume (fatal);
3. run `handle()` under the worker's retry policy;
4. on a fatal error or an exhausted budget, dead-letter (critical workers)
   or log (non-critical workers);
5. commit the offset.

The offset is committed only after `process_message()` returns. If the
dead-letter publish itself fails, the consumer is rewound to the message so
it is redelivered instead of skipped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from confluent_kafka import KafkaError, TopicPartition

from shared.config.kafka_config import create_consumer
from shared.config.settings import ApplicationSettings, get_settings
from shared.exceptions.pipeline import (
    ErrorClass,
    EventPublishError,
    UnexpectedEventTypeError,
    classify_exception,
    describe_exception,
)
from shared.models.event_envelope import EventEnvelope, EventType
from shared.observability.metrics import MetricsCollector, get_metrics_collector
from shared.services.dead_letter_publisher import DeadLetterPublisher
from shared.services.event_bus import EventPublisher
from shared.utils.retry import RetryError, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class MessageOutcome(str, Enum):
    PROCESSED = "processed"
    DEAD_LETTERED = "dead_lettered"
    DROPPED = "dropped"


def _raw_event(value: Optional[bytes]) -> Any:
    if value is None:
        return None
    text = value.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class EventWorker(ABC):
    """
    Base class for a single-topic-group consumer.

    Subclasses set `worker_name`, `handled_event_types` and (for best-effort
    workers) `critical = False`, and implement `handle()`.
    """

    worker_name: str = "event-worker"
    handled_event_types: FrozenSet[EventType] = frozenset()
    critical: bool = True

    def __init__(
        self,
        *,
        topics: List[str],
        group_id: str,
        retry_policy: RetryPolicy,
        settings: Optional[ApplicationSettings] = None,
        publisher: Optional[EventPublisher] = None,
        consumer: Any = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.topics = list(topics)
        self.group_id = group_id
        self.retry_policy = retry_policy
        self.publisher = publisher or EventPublisher(self.worker_name, kafka=self.settings.kafka)
        self.dead_letters = DeadLetterPublisher(self.publisher, self.settings.kafka.dead_letter_topic)
        self.consumer = consumer
        self.metrics = metrics or get_metrics_collector(self.worker_name)
        self.running = False
        self._sleep = sleep
        self._consumer_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kafka-consumer")

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    @abstractmethod
    async def handle(self, envelope: EventEnvelope) -> None:
        """Process one envelope; must be safe to call again for the same event."""

    def classify_error(self, exc: BaseException) -> ErrorClass:
        return classify_exception(exc)

    def failure_context(self, envelope: EventEnvelope, exc: BaseException) -> Dict[str, Any]:
        """Extra DLQ context for this worker."""
        return {}

    async def on_startup(self) -> None:
        pass

    async def on_shutdown(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Message processing
    # ------------------------------------------------------------------
    async def process_message(
        self,
        value: Optional[bytes],
        *,
        topic: str,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> MessageOutcome:
        started = time.monotonic()
        try:
            envelope = EventEnvelope.from_kafka_value(value)
        except ValueError as e:
            logger.error(f"{self.worker_name} received an undecodable message on {topic}@{offset}: {e}")
            return await self._fail(
                original_event=_raw_event(value),
                envelope=None,
                error=e,
                attempts=1,
                error_class=ErrorClass.FATAL,
                topic=topic,
                partition=partition,
                offset=offset,
                started=started,
            )

        if envelope.event_type not in self.handled_event_types:
            error = UnexpectedEventTypeError(envelope.event_type.value, self.worker_name)
            return await self._fail(
                original_event=envelope.model_dump(mode="json", by_alias=True),
                envelope=envelope,
                error=error,
                attempts=1,
                error_class=ErrorClass.FATAL,
                topic=topic,
                partition=partition,
                offset=offset,
                started=started,
            )

        try:
            await with_retry(
                lambda: self.handle(envelope),
                self.retry_policy,
                classify=self.classify_error,
                operation=f"{self.worker_name}:{envelope.event_type.value}:{envelope.correlation_id}",
                sleep=self._sleep,
                on_retry=lambda _e, _attempt, _delay: self.metrics.record_retry(),
            )
        except RetryError as e:
            last_error = e.last_error or e
            return await self._fail(
                original_event=envelope.model_dump(mode="json", by_alias=True),
                envelope=envelope,
                error=last_error,
                attempts=e.attempts,
                error_class=e.error_class,
                topic=topic,
                partition=partition,
                offset=offset,
                started=started,
            )

        self.metrics.record_event(envelope.event_type.value, MessageOutcome.PROCESSED.value, time.monotonic() - started)
        return MessageOutcome.PROCESSED

    async def _fail(
        self,
        *,
        original_event: Any,
        envelope: Optional[EventEnvelope],
        error: BaseException,
        attempts: int,
        error_class: ErrorClass,
        topic: str,
        partition: Optional[int],
        offset: Optional[int],
        started: float,
    ) -> MessageOutcome:
        event_type = envelope.event_type.value if envelope else "UNKNOWN"
        duration = time.monotonic() - started

        if not self.critical:
            logger.warning(
                f"{self.worker_name} gave up on {event_type} after {attempts} attempts "
                f"(correlation_id={envelope.correlation_id if envelope else None}); acknowledging: {error!r}"
            )
            self.metrics.record_event(event_type, MessageOutcome.DROPPED.value, duration)
            return MessageOutcome.DROPPED

        context: Dict[str, Any] = {"error": describe_exception(error)}
        correlation_id: Optional[str] = None
        event_id: Optional[str] = None
        if envelope is not None:
            correlation_id = envelope.correlation_id
            event_id = envelope.event_id
            context.update(self.failure_context(envelope, error))
        elif isinstance(original_event, dict):
            correlation_id = original_event.get("correlationId")
            event_id = original_event.get("eventId")

        await self.dead_letters.publish(
            original_event=original_event,
            original_topic=topic,
            original_partition=partition,
            original_offset=offset,
            worker_name=self.worker_name,
            attempts=attempts,
            last_error=error,
            error_class=error_class,
            correlation_id=str(correlation_id) if correlation_id else None,
            event_id=str(event_id) if event_id else None,
            context=context,
        )
        self.metrics.record_dead_letter(error_class.value)
        self.metrics.record_event(event_type, MessageOutcome.DEAD_LETTERED.value, duration)
        return MessageOutcome.DEAD_LETTERED

    # ------------------------------------------------------------------
    # Consume loop
    # ------------------------------------------------------------------
    async def _consumer_call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._consumer_executor, lambda: func(*args, **kwargs))

    async def initialize(self) -> None:
        await self.on_startup()
        if self.consumer is None:
            self.consumer = create_consumer(self.worker_name, self.group_id, kafka=self.settings.kafka)
        await self._consumer_call(self.consumer.subscribe, self.topics)
        logger.info(f"{self.worker_name} initialized (topics={self.topics}, group={self.group_id})")

    async def run(self) -> None:
        if self.consumer is None:
            raise RuntimeError(f"{self.worker_name} not initialized")

        self.running = True
        poll_timeout = self.settings.kafka.poll_timeout_seconds
        logger.info(f"{self.worker_name} started")

        while self.running:
            msg = await self._consumer_call(self.consumer.poll, poll_timeout)
            if msg is None:
                continue

            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                logger.error(f"Kafka error: {msg.error()}")
                continue

            try:
                await self.process_message(
                    msg.value(),
                    topic=msg.topic(),
                    partition=msg.partition(),
                    offset=msg.offset(),
                )
            except EventPublishError as e:
                logger.error(
                    f"Dead-letter publish failed for {msg.topic()}[{msg.partition()}]@{msg.offset()}; "
                    f"offset not committed, message will be redelivered: {e}"
                )
                await self._consumer_call(
                    self.consumer.seek, TopicPartition(msg.topic(), msg.partition(), msg.offset())
                )
                await self._sleep(self.retry_policy.delay_for(1))
                continue

            await self._consumer_call(self.consumer.commit, msg, asynchronous=False)

    async def shutdown(self) -> None:
        logger.info(f"Shutting down {self.worker_name}...")
        self.running = False

        if self.consumer is not None:
            try:
                await self._consumer_call(self.consumer.close)
            finally:
                self.consumer = None
        await self.on_shutdown()
        await self.publisher.close()
        self._consumer_executor.shutdown(wait=False, cancel_futures=True)
        logger.info(f"{self.worker_name} shut down successfully")


async def serve(worker: EventWorker) -> None:
    """Process entrypoint body: signal handlers, initialize, run, shutdown."""

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        worker.running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.initialize()
        await worker.run()
    except Exception as e:
        logger.error(f"Fatal error in {worker.worker_name}: {e}")
        raise
    finally:
        await worker.shutdown()
