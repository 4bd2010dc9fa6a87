from __future__ import annotations

from datetime import date, time

import pytest

from shared.models.scheduling import (
    Cadence,
    SchedulingHints,
    format_time_slot,
    parse_time_slot,
    session_count_from_metadata,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [
        ("4:00 PM", time(16, 0)),
        ("12:30 am", time(0, 30)),
        ("16:00", time(16, 0)),
        ("09:15:30", time(9, 15, 30)),
        ("25:00", None),
        ("13:00 PM", None),
        ("soon", None),
        (1600, None),
    ],
)
def test_parse_time_slot(raw, expected):
    assert parse_time_slot(raw) == expected


@pytest.mark.unit
def test_format_time_slot_uses_twelve_hour_clock():
    assert format_time_slot(time(16, 0)) == "4:00 PM"
    assert format_time_slot(time(0, 5)) == "12:05 AM"


@pytest.mark.unit
def test_hints_from_nested_schedule_metadata():
    hints = SchedulingHints.from_metadata(
        {"schedule": {"startDate": "2026-03-04", "timeSlot": "5:30 PM", "mode": "Sunday classes"}}
    )

    assert hints == SchedulingHints(
        start_date=date(2026, 3, 4),
        time_slot=time(17, 30),
        cadence=Cadence.SUNDAY_ONLY,
        duration_minutes=None,
    )


@pytest.mark.unit
def test_hints_ignore_malformed_values():
    hints = SchedulingHints.from_metadata(
        {"startDate": "next week", "timeSlot": "whenever", "durationMinutes": -5, "cadence": "hourly"}
    )

    assert hints == SchedulingHints()


@pytest.mark.unit
def test_is_sunday_only_flag():
    assert SchedulingHints.from_metadata({"isSundayOnly": True}).cadence is Cadence.SUNDAY_ONLY
    assert SchedulingHints.from_metadata({"isSundayOnly": False}).cadence is Cadence.DAILY
    assert SchedulingHints.from_metadata(None).cadence is None


@pytest.mark.unit
def test_merged_over_prefers_own_fields():
    event = SchedulingHints(cadence=Cadence.SUNDAY_ONLY)
    stored = SchedulingHints(start_date=date(2026, 3, 1), cadence=Cadence.DAILY, time_slot=time(9, 0))

    merged = event.merged_over(stored)

    assert merged.cadence is Cadence.SUNDAY_ONLY
    assert merged.start_date == date(2026, 3, 1)
    assert merged.time_slot == time(9, 0)


@pytest.mark.unit
def test_to_metadata_round_trips_through_from_metadata():
    hints = SchedulingHints(
        start_date=date(2026, 3, 1), time_slot=time(16, 0), cadence=Cadence.SUNDAY_ONLY, duration_minutes=80
    )

    metadata = hints.to_metadata()

    assert metadata["timeSlot"] == "4:00 PM"
    assert metadata["isSundayOnly"] is True
    assert SchedulingHints.from_metadata(metadata) == hints


@pytest.mark.unit
def test_session_count_from_metadata():
    assert session_count_from_metadata({"sessionCount": "12"}) == 12
    assert session_count_from_metadata({"purchaseTier": 30}) == 30
    assert session_count_from_metadata({"tier": 0}) is None
    assert session_count_from_metadata({"sessionCount": True}) is None
