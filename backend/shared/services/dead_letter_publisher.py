"""
Dead-letter publisher.

A dead-letter record keeps everything needed to replay or diagnose the
original message: the raw envelope (or the undecodable bytes), where it came
from, which worker gave up, and why. Records are keyed by correlationId so
all failures of one business transaction share a partition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.exceptions.pipeline import ErrorClass
from shared.services.event_bus import EventPublisher, build_headers
from shared.utils.json_utils import to_json_safe

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadLetterRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    original_event: Any = Field(..., description="Decoded envelope, or the raw text when decoding failed")
    original_topic: str
    original_partition: Optional[int] = None
    original_offset: Optional[int] = None
    worker_name: str
    attempts: int = Field(..., ge=0)
    last_error: str
    error_class: ErrorClass
    failure_timestamp: datetime = Field(default_factory=_utcnow)
    correlation_id: Optional[str] = None
    event_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    def kafka_key(self) -> bytes:
        return (self.correlation_id or self.event_id or self.worker_name).encode("utf-8")

    def kafka_headers(self) -> Dict[str, Any]:
        return {
            "originalTopic": self.original_topic,
            "originalPartition": self.original_partition,
            "originalOffset": self.original_offset,
            "workerName": self.worker_name,
            "correlationId": self.correlation_id,
            "eventId": self.event_id,
        }


class DeadLetterPublisher:
    def __init__(self, publisher: EventPublisher, topic: str):
        self.publisher = publisher
        self.topic = topic

    async def publish(
        self,
        *,
        original_event: Any,
        original_topic: str,
        original_partition: Optional[int],
        original_offset: Optional[int],
        worker_name: str,
        attempts: int,
        last_error: BaseException,
        error_class: ErrorClass,
        correlation_id: Optional[str] = None,
        event_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> DeadLetterRecord:
        """Raises EventPublishError when the broker did not take the record."""
        record = DeadLetterRecord(
            original_event=to_json_safe(original_event),
            original_topic=original_topic,
            original_partition=original_partition,
            original_offset=original_offset,
            worker_name=worker_name,
            attempts=attempts,
            last_error=f"{type(last_error).__name__}: {last_error}"[:4000],
            error_class=error_class,
            correlation_id=correlation_id,
            event_id=event_id,
            context=to_json_safe(context or {}),
        )
        await self.publisher.publish_raw(
            self.topic,
            key=record.kafka_key(),
            value=record.model_dump_json(by_alias=True).encode("utf-8"),
            headers=build_headers(record.kafka_headers()),
        )
        logger.error(
            f"Dead-lettered message from {original_topic}[{original_partition}]@{original_offset} "
            f"(worker={worker_name}, correlation_id={correlation_id}, attempts={attempts}, "
            f"error_class={error_class.value}): {record.last_error}"
        )
        return record
