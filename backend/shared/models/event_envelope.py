"""
Event envelope model used by every fulfillment worker.

One canonical shape travels on every topic (JSON, camelCase keys):
`{eventId, correlationId, eventType, timestamp, payload, source, version}`.
The idempotency key downstream is `(correlationId, eventType)`, never
`eventId`, because redelivered copies may carry different transport ids.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type, Union
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Closed set of pipeline event types."""

    PURCHASE_CONFIRMED = "PURCHASE_CONFIRMED"
    PURCHASE_CREATED = "PURCHASE_CREATED"
    TRAINER_ALLOCATED = "TRAINER_ALLOCATED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_id(value: Any) -> str:
    if value is None:
        raise ValueError("id is required")
    text = str(value).strip()
    if not text:
        raise ValueError("id must not be empty")
    return text


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class PurchaseConfirmedPayload(_CamelModel):
    """Payload of PURCHASE_CONFIRMED (payment already captured)."""

    student_id: str
    course_id: str
    tier: Optional[int] = Field(None, ge=1, description="Purchased session count; defaulted by the worker")
    payment_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("student_id", "course_id", mode="before")
    @classmethod
    def check_ids(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("payment_id", mode="before")
    @classmethod
    def _optional_id(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return str(v).strip() or None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_object(cls, v: Any) -> Dict[str, Any]:
        return v if isinstance(v, dict) else {}


class PurchaseCreatedPayload(_CamelModel):
    """Payload of PURCHASE_CREATED."""

    purchase_id: str
    student_id: str
    course_id: str
    tier: int = Field(..., ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("purchase_id", "student_id", "course_id", mode="before")
    @classmethod
    def check_ids(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_object(cls, v: Any) -> Dict[str, Any]:
        return v if isinstance(v, dict) else {}


class TrainerAllocatedPayload(_CamelModel):
    """Payload of TRAINER_ALLOCATED."""

    allocation_id: str
    trainer_id: str
    student_id: str
    course_id: str
    session_count: Optional[int] = Field(None, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("allocation_id", "trainer_id", "student_id", "course_id", mode="before")
    @classmethod
    def check_ids(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _date_only(cls, v: Any) -> Any:
        # Producers send either YYYY-MM-DD or a full ISO timestamp.
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        if isinstance(v, datetime):
            return v.date()
        return v


EventPayload = Union[PurchaseConfirmedPayload, PurchaseCreatedPayload, TrainerAllocatedPayload]

PAYLOAD_MODELS: Dict[EventType, Type[_CamelModel]] = {
    EventType.PURCHASE_CONFIRMED: PurchaseConfirmedPayload,
    EventType.PURCHASE_CREATED: PurchaseCreatedPayload,
    EventType.TRAINER_ALLOCATED: TrainerAllocatedPayload,
}


class EventEnvelope(BaseModel):
    """
    Canonical event envelope.

    Notes:
    - `timestamp` is always timezone-aware UTC.
    - `payload` stays a plain dict on the envelope; `decode_payload()` turns
      it into the typed model for `event_type` exactly once per handler.
    - envelopes built with `EventEnvelope.build()` get a deterministic
      `event_id` so a recovery re-emission is byte-identical in identity.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique event id")
    correlation_id: str = Field(..., description="Business transaction id threaded across the chain")
    event_type: EventType = Field(..., description="Closed event type")
    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp (UTC)")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    source: str = Field("unknown", description="Emitting service")
    version: str = Field("1.0", description="Envelope schema version")

    _EVENT_NAMESPACE: ClassVar[UUID] = uuid5(NAMESPACE_URL, "tutoring-fulfillment:events")

    @field_validator("correlation_id", mode="before")
    @classmethod
    def check_correlation_id(cls, v: Any) -> str:
        return _require_id(v)

    @field_validator("event_id", mode="before")
    @classmethod
    def _stringify_event_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, UUID) else v

    @field_validator("timestamp", mode="after")
    @classmethod
    def _normalize_timestamp(cls, v: datetime) -> datetime:
        return cls._normalize_datetime(v)

    @staticmethod
    def _normalize_datetime(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @classmethod
    def deterministic_event_id(cls, event_type: EventType, correlation_id: str) -> str:
        return str(uuid5(cls._EVENT_NAMESPACE, f"{event_type.value}:{correlation_id}"))

    @classmethod
    def build(
        cls,
        *,
        event_type: EventType,
        correlation_id: str,
        payload: Union[EventPayload, Dict[str, Any]],
        source: str,
        version: str = "1.0",
        timestamp: Optional[datetime] = None,
    ) -> "EventEnvelope":
        if isinstance(payload, BaseModel):
            body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        else:
            body = dict(payload)
        return cls(
            event_id=cls.deterministic_event_id(event_type, correlation_id),
            correlation_id=correlation_id,
            event_type=event_type,
            timestamp=timestamp or _utcnow(),
            payload=body,
            source=source,
            version=version,
        )

    @classmethod
    def from_kafka_value(cls, raw: Union[bytes, str, None]) -> "EventEnvelope":
        if raw is None:
            raise ValueError("empty Kafka message value")
        return cls.model_validate_json(raw)

    def decode_payload(self) -> EventPayload:
        return PAYLOAD_MODELS[self.event_type].model_validate(self.payload)

    def to_kafka_value(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def as_kafka_key(self) -> bytes:
        # Same business transaction lands on the same partition.
        return self.correlation_id.encode("utf-8")
