"""
Durable records owned (or read) by the fulfillment workers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class AllocationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"


ACTIVE_ALLOCATION_STATUSES: FrozenSet[str] = frozenset({AllocationStatus.APPROVED.value, AllocationStatus.ACTIVE.value})

SESSION_STATUS_SCHEDULED = "scheduled"
FUTURE_SESSION_STATUSES: FrozenSet[str] = frozenset({SESSION_STATUS_SCHEDULED, "pending"})


@dataclass(frozen=True)
class PurchaseDraft:
    student_id: str
    course_id: str
    tier: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PurchaseRecord:
    purchase_id: str
    student_id: str
    course_id: str
    tier: int
    metadata: Dict[str, Any]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class AllocationRecord:
    allocation_id: str
    student_id: str
    course_id: str
    trainer_id: Optional[str]
    status: str
    metadata: Dict[str, Any]
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ALLOCATION_STATUSES


@dataclass(frozen=True)
class SessionSlot:
    """A session to insert; unique on (allocation_id, scheduled_date, scheduled_time)."""

    allocation_id: str
    student_id: str
    trainer_id: str
    course_id: str
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    allocation_id: str
    student_id: str
    trainer_id: str
    course_id: str
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int
    status: str
    created_at: Optional[datetime] = None
