"""
Rolling-window session scheduling.

An allocation keeps `window_size` future sessions on the calendar. Both the
session worker (on TRAINER_ALLOCATED) and the periodic sweep call
`RollingWindowScheduler.top_up()`; it only ever inserts, and every insert is
`ON CONFLICT DO NOTHING`, so two callers racing on the same allocation end
with one session set.

Slot generation:
- candidates start at `max(start_date, today)`, or the day after the latest
  session already on the calendar when that is later;
- `daily`: consecutive days, skipping the configured excluded weekdays;
- `sunday_only`: the first Sunday on or after the anchor, then every 7 days.
The total for an allocation never exceeds `session_count` and no session is
placed after `end_date`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional

import asyncpg

from shared.config.settings import SessionSettings, get_settings
from shared.models.fulfillment import AllocationRecord, PurchaseRecord, SessionSlot
from shared.models.scheduling import (
    Cadence,
    SchedulingHints,
    format_time_slot,
    parse_date,
    session_count_from_metadata,
)
from shared.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

SUNDAY = 6


@dataclass(frozen=True)
class SchedulePolicy:
    cadence: Cadence = Cadence.DAILY
    duration_minutes: int = 40
    time_slot: time = time(16, 0)
    excluded_weekdays: FrozenSet[int] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        if self.cadence == Cadence.DAILY and len(self.excluded_weekdays) >= 7:
            raise ValueError("daily cadence cannot exclude every weekday")

    @classmethod
    def from_hints(cls, hints: SchedulingHints, session: Optional[SessionSettings] = None) -> "SchedulePolicy":
        session = session or get_settings().session
        cadence = hints.cadence or Cadence.DAILY
        if cadence == Cadence.SUNDAY_ONLY:
            default_duration = session.session_sunday_duration_minutes
        else:
            default_duration = session.session_daily_duration_minutes
        return cls(
            cadence=cadence,
            duration_minutes=hints.duration_minutes or default_duration,
            time_slot=hints.time_slot or session.session_default_time_slot,
            excluded_weekdays=session.excluded_weekdays,
        )

    def first_slot_on_or_after(self, day: date) -> date:
        if self.cadence == Cadence.SUNDAY_ONLY:
            return day + timedelta(days=(SUNDAY - day.weekday()) % 7)
        while day.weekday() in self.excluded_weekdays:
            day += timedelta(days=1)
        return day

    def slot_dates(self, anchor: date) -> Iterator[date]:
        """Unbounded, strictly increasing slot dates starting at `anchor`."""
        day = self.first_slot_on_or_after(anchor)
        while True:
            yield day
            if self.cadence == Cadence.SUNDAY_ONLY:
                day += timedelta(days=7)
            else:
                day = self.first_slot_on_or_after(day + timedelta(days=1))

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "cadence": self.cadence.value,
            "durationMinutes": self.duration_minutes,
            "timeSlot": format_time_slot(self.time_slot),
        }


def sweep_hints(
    allocation: AllocationRecord,
    *,
    recorded: Optional[Mapping[str, Any]] = None,
    purchase: Optional[PurchaseRecord] = None,
) -> SchedulingHints:
    """
    Hints for an allocation the sweep tops up.

    The schedule recorded when TRAINER_ALLOCATED was handled wins, then the
    purchase metadata, then the allocation metadata (the same precedence the
    allocation worker applies when it builds the event).
    """
    hints = SchedulingHints.from_metadata(recorded)
    if purchase is not None:
        hints = hints.merged_over(SchedulingHints.from_metadata(purchase.metadata))
    return hints.merged_over(SchedulingHints.from_metadata(allocation.metadata))


@dataclass(frozen=True)
class WindowRequest:
    """Which allocation to fill and its caps."""

    allocation_id: str
    student_id: str
    trainer_id: str
    course_id: str
    start_date: Optional[date] = None
    session_count: Optional[int] = None
    end_date: Optional[date] = None

    @classmethod
    def from_allocation(
        cls,
        allocation: AllocationRecord,
        *,
        recorded: Optional[Mapping[str, Any]] = None,
        purchase: Optional[PurchaseRecord] = None,
    ) -> "WindowRequest":
        """
        Rebuild the request outside of a TRAINER_ALLOCATED delivery.

        `session_count` falls back from the recorded schedule to the allocation
        metadata to the purchase tier, so the cap survives an allocation
        service that stores no metadata.
        """
        if not allocation.trainer_id:
            raise ValueError(f"allocation {allocation.allocation_id} has no trainer")
        metadata: Mapping[str, Any] = allocation.metadata or {}
        recorded = recorded or {}
        hints = sweep_hints(allocation, recorded=recorded, purchase=purchase)
        session_count = session_count_from_metadata(recorded) or session_count_from_metadata(metadata)
        if session_count is None and purchase is not None:
            session_count = purchase.tier
        return cls(
            allocation_id=allocation.allocation_id,
            student_id=allocation.student_id,
            trainer_id=allocation.trainer_id,
            course_id=allocation.course_id,
            start_date=hints.start_date,
            session_count=session_count,
            end_date=parse_date(recorded.get("endDate")) or parse_date(metadata.get("endDate")),
        )

    def to_metadata(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.start_date is not None:
            out["startDate"] = self.start_date.isoformat()
        if self.session_count is not None:
            out["sessionCount"] = self.session_count
        if self.end_date is not None:
            out["endDate"] = self.end_date.isoformat()
        return out


def recorded_schedule(request: WindowRequest, policy: SchedulePolicy) -> Dict[str, Any]:
    """What the sweep needs later to rebuild `request` and `policy`."""
    return {**request.to_metadata(), **policy.to_metadata()}


@dataclass(frozen=True)
class TopUpResult:
    allocation_id: str
    future_before: int
    created: int
    skipped_reason: Optional[str] = None

    @property
    def future_after(self) -> int:
        return self.future_before + self.created


class RollingWindowScheduler:
    def __init__(
        self,
        sessions: Optional[SessionRegistry] = None,
        *,
        session: Optional[SessionSettings] = None,
    ):
        self.sessions = sessions or SessionRegistry()
        self.settings = session or get_settings().session
        self.window_size = self.settings.session_window_size
        self.low_water_mark = self.settings.session_low_water_mark

    def policy_for(self, hints: SchedulingHints) -> SchedulePolicy:
        return SchedulePolicy.from_hints(hints, self.settings)

    async def top_up(
        self,
        conn: asyncpg.Connection,
        request: WindowRequest,
        policy: SchedulePolicy,
        *,
        today: date,
        threshold: Optional[int] = None,
    ) -> TopUpResult:
        """
        Create sessions until `window_size` future sessions exist.

        With `threshold` set (the sweep), nothing happens unless fewer than
        `threshold` future sessions remain.
        Concurrent top-ups of one allocation serialize on an advisory lock
        held until `conn` commits.
        """
        allocation_id = request.allocation_id
        await self.sessions.lock_allocation(conn, allocation_id)
        future = await self.sessions.count_future(conn, allocation_id, today)
        if threshold is not None and future >= threshold:
            return TopUpResult(allocation_id, future, 0, "above_low_water_mark")

        deficit = self.window_size - future
        if deficit <= 0:
            return TopUpResult(allocation_id, future, 0, "window_full")

        existing = await self.sessions.count_all(conn, allocation_id)
        if request.session_count is not None:
            deficit = min(deficit, request.session_count - existing)
            if deficit <= 0:
                return TopUpResult(allocation_id, future, 0, "session_count_reached")

        anchor = max(request.start_date or today, today)
        latest = await self.sessions.latest_scheduled_date(conn, allocation_id)
        if latest is not None and latest >= anchor:
            anchor = latest + timedelta(days=1)

        # Every conflict is a row of this allocation, so `existing` bounds them.
        created = 0
        for attempt, day in enumerate(policy.slot_dates(anchor)):
            if created >= deficit or attempt >= deficit + existing:
                break
            if request.end_date is not None and day > request.end_date:
                break
            slot = SessionSlot(
                allocation_id=allocation_id,
                student_id=request.student_id,
                trainer_id=request.trainer_id,
                course_id=request.course_id,
                scheduled_date=day,
                scheduled_time=policy.time_slot,
                duration_minutes=policy.duration_minutes,
            )
            record = await self.sessions.insert_slot(conn, slot)
            if record is None:
                logger.debug(f"Session slot already exists (allocation={allocation_id}, date={day})")
                continue
            created += 1

        if created < deficit:
            logger.info(
                f"Window for allocation {allocation_id} filled partially "
                f"(created={created}, wanted={deficit}, end_date={request.end_date})"
            )
        return TopUpResult(allocation_id, future, created)
