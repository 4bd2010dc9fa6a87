"""
Event bus producer (Kafka).

`publish()` returns only after the broker acknowledged the message
(`acks=all`, idempotent producer). Callers commit their consumer offset after
it returns; a raised `EventPublishError` means delivery is unknown and the
input message must not be acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from confluent_kafka import KafkaException

from shared.config.kafka_config import create_producer
from shared.config.settings import KafkaSettings, get_settings
from shared.exceptions.pipeline import EventPublishError
from shared.models.event_envelope import EventEnvelope

logger = logging.getLogger(__name__)

KafkaHeaders = List[Tuple[str, bytes]]


def build_headers(values: Dict[str, Any]) -> KafkaHeaders:
    """Kafka headers from a flat mapping; None values are dropped."""
    return [(key, str(value).encode("utf-8")) for key, value in values.items() if value is not None]


class EventPublisher:
    def __init__(
        self,
        service_name: str,
        *,
        producer: Any = None,
        kafka: Optional[KafkaSettings] = None,
    ):
        self.service_name = service_name
        self._kafka = kafka or get_settings().kafka
        self._producer = producer
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kafka-producer")

    @property
    def producer(self) -> Any:
        if self._producer is None:
            self._producer = create_producer(self.service_name, kafka=self._kafka)
        return self._producer

    async def _producer_call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def publish(
        self,
        topic: str,
        envelope: EventEnvelope,
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        base_headers = {
            "eventType": envelope.event_type.value,
            "eventId": envelope.event_id,
            "correlationId": envelope.correlation_id,
            "source": envelope.source,
        }
        base_headers.update(headers or {})
        await self.publish_raw(
            topic,
            key=envelope.as_kafka_key(),
            value=envelope.to_kafka_value(),
            headers=build_headers(base_headers),
        )
        logger.info(
            f"Published {envelope.event_type.value} to {topic} "
            f"(event_id={envelope.event_id}, correlation_id={envelope.correlation_id})"
        )

    async def publish_raw(
        self,
        topic: str,
        *,
        key: bytes,
        value: bytes,
        headers: Optional[KafkaHeaders] = None,
    ) -> None:
        delivery_errors: List[str] = []

        def _on_delivery(err, _msg) -> None:
            if err is not None:
                delivery_errors.append(str(err))

        producer = self.producer
        try:
            await self._producer_call(
                producer.produce,
                topic=topic,
                key=key,
                value=value,
                headers=headers or None,
                on_delivery=_on_delivery,
            )
        except (BufferError, KafkaException) as e:
            # queue full or message too large
            raise EventPublishError(f"produce rejected: {e}", topic=topic) from e
        remaining = await self._producer_call(producer.flush, self._kafka.flush_timeout_seconds)
        if delivery_errors:
            raise EventPublishError(delivery_errors[0], topic=topic)
        if remaining:
            raise EventPublishError(f"flush incomplete (remaining={remaining}); delivery unknown", topic=topic)

    async def close(self) -> None:
        if self._producer is not None:
            try:
                await self._producer_call(self._producer.flush, self._kafka.flush_timeout_seconds)
            finally:
                self._producer = None
        self._executor.shutdown(wait=False, cancel_futures=True)
