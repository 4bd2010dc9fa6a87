"""
Shared model definitions for the fulfillment pipeline
"""

from .event_envelope import (
    EventEnvelope,
    EventType,
    PurchaseConfirmedPayload,
    PurchaseCreatedPayload,
    TrainerAllocatedPayload,
)
from .fulfillment import AllocationRecord, AllocationStatus, PurchaseRecord, SessionRecord, SessionSlot
from .scheduling import Cadence, SchedulingHints

__all__ = [
    # envelope
    "EventEnvelope",
    "EventType",
    "PurchaseConfirmedPayload",
    "PurchaseCreatedPayload",
    "TrainerAllocatedPayload",
    # records
    "AllocationRecord",
    "AllocationStatus",
    "PurchaseRecord",
    "SessionRecord",
    "SessionSlot",
    # scheduling
    "Cadence",
    "SchedulingHints",
]
