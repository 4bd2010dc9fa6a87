"""
Scheduling hints carried in purchase/allocation metadata.

Metadata is free-form JSON written by several producers (checkout, admin
tools, the allocation service). It is decoded exactly once, here, into
`SchedulingHints`; everything downstream works with the typed record.

Recognised keys (first match wins):
- start date: `startDate`, `schedule.startDate`, `preferredStartDate`
- time slot: `timeSlot`, `preferredTimeSlot`, `schedule.timeSlot`
  (`"4:00 PM"`, `"16:00"` or `"16:00:00"`)
- cadence: `cadence` (`daily` / `sunday_only`), `isSundayOnly: true`, or a
  `scheduleMode` / `schedule.mode` containing `sunday`
- duration: `durationMinutes`, `sessionDurationMinutes`
- session count: `sessionCount`, `purchaseTier`, `tier`

Unparseable values are dropped (the field stays None and the policy default
applies) instead of failing the event.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$")


class Cadence(str, Enum):
    DAILY = "daily"
    SUNDAY_ONLY = "sunday_only"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_time_slot(value: Any) -> Optional[time]:
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        return None
    match = _TIME_PATTERN.match(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").upper()
    if meridiem:
        if hour < 1 or hour > 12:
            return None
        hour = hour % 12 + (12 if meridiem == "PM" else 0)
    if hour > 23 or minute > 59 or second > 59:
        return None
    return time(hour, minute, second)


def format_time_slot(value: time) -> str:
    """Render as the 12-hour form the allocation service expects ("4:00 PM")."""
    hour = value.hour % 12 or 12
    meridiem = "PM" if value.hour >= 12 else "AM"
    return f"{hour}:{value.minute:02d} {meridiem}"


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _lookup(metadata: Mapping[str, Any], paths: Iterable[str]) -> Any:
    for path in paths:
        node: Any = metadata
        for part in path.split("."):
            if not isinstance(node, Mapping) or part not in node:
                node = None
                break
            node = node[part]
        if node is not None and node != "":
            return node
    return None


def _parse_cadence(metadata: Mapping[str, Any]) -> Optional[Cadence]:
    explicit = _lookup(metadata, ("cadence", "schedule.cadence"))
    if isinstance(explicit, str):
        normalized = explicit.strip().lower().replace("-", "_")
        if normalized in {"sunday", "sunday_only", "weekly_sunday"}:
            return Cadence.SUNDAY_ONLY
        if normalized in {"daily", "weekday_daily"}:
            return Cadence.DAILY
    sunday_flag = _lookup(metadata, ("isSundayOnly", "schedule.isSundayOnly"))
    if sunday_flag is True or (isinstance(sunday_flag, str) and sunday_flag.strip().lower() == "true"):
        return Cadence.SUNDAY_ONLY
    mode = _lookup(metadata, ("scheduleMode", "schedule.mode"))
    if isinstance(mode, str) and "sunday" in mode.lower():
        return Cadence.SUNDAY_ONLY
    if sunday_flag is False:
        return Cadence.DAILY
    return None


@dataclass(frozen=True)
class SchedulingHints:
    start_date: Optional[date] = None
    time_slot: Optional[time] = None
    cadence: Optional[Cadence] = None
    duration_minutes: Optional[int] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "SchedulingHints":
        if not isinstance(metadata, Mapping):
            return cls()
        raw_slot = _lookup(metadata, ("timeSlot", "preferredTimeSlot", "schedule.timeSlot"))
        time_slot = parse_time_slot(raw_slot)
        if raw_slot is not None and time_slot is None:
            logger.debug("Ignoring unparseable time slot in metadata: %r", raw_slot)
        return cls(
            start_date=parse_date(_lookup(metadata, ("startDate", "schedule.startDate", "preferredStartDate"))),
            time_slot=time_slot,
            cadence=_parse_cadence(metadata),
            duration_minutes=_positive_int(_lookup(metadata, ("durationMinutes", "sessionDurationMinutes"))),
        )

    def merged_over(self, fallback: "SchedulingHints") -> "SchedulingHints":
        """Fields set here win; unset fields come from `fallback`."""
        return SchedulingHints(
            start_date=self.start_date or fallback.start_date,
            time_slot=self.time_slot or fallback.time_slot,
            cadence=self.cadence or fallback.cadence,
            duration_minutes=self.duration_minutes or fallback.duration_minutes,
        )

    def to_metadata(self) -> Dict[str, Any]:
        """camelCase form sent to the allocation service as `schedulingHints`."""
        out: Dict[str, Any] = {}
        if self.start_date:
            out["startDate"] = self.start_date.isoformat()
        if self.time_slot:
            out["timeSlot"] = format_time_slot(self.time_slot)
        if self.cadence:
            out["cadence"] = self.cadence.value
            out["isSundayOnly"] = self.cadence == Cadence.SUNDAY_ONLY
        if self.duration_minutes:
            out["durationMinutes"] = self.duration_minutes
        return out


def session_count_from_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not isinstance(metadata, Mapping):
        return None
    return _positive_int(_lookup(metadata, ("sessionCount", "purchaseTier", "tier")))
