"""
Session registry (Postgres).

Sessions are unique on (allocation_id, scheduled_date, scheduled_time); an
insert that hits that constraint is a no-op, not an error.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Optional
from uuid import uuid4

import asyncpg

from shared.config.app_config import AppConfig
from shared.models.fulfillment import FUTURE_SESSION_STATUSES, SESSION_STATUS_SCHEDULED, SessionRecord, SessionSlot

_SESSION_COLUMNS = (
    "id, allocation_id, student_id, trainer_id, course_id, scheduled_date, scheduled_time, "
    "duration_minutes, status, created_at"
)


def _row_to_session(row: Any) -> SessionRecord:
    return SessionRecord(
        session_id=str(row["id"]),
        allocation_id=str(row["allocation_id"]),
        student_id=str(row["student_id"]),
        trainer_id=str(row["trainer_id"]),
        course_id=str(row["course_id"]),
        scheduled_date=row["scheduled_date"],
        scheduled_time=row["scheduled_time"],
        duration_minutes=int(row["duration_minutes"]),
        status=str(row["status"]),
        created_at=row["created_at"],
    )


class SessionRegistry:
    async def lock_allocation(self, conn: asyncpg.Connection, allocation_id: str) -> None:
        """Transaction-scoped advisory lock; released on commit/rollback."""
        await conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext($1))",
            AppConfig.get_session_window_lock_key(allocation_id),
        )

    async def count_future(self, conn: asyncpg.Connection, allocation_id: str, today: date) -> int:
        return int(
            await conn.fetchval(
                """
                SELECT COUNT(*) FROM sessions
                WHERE allocation_id = $1 AND scheduled_date >= $2 AND status = ANY($3::text[])
                """,
                allocation_id,
                today,
                sorted(FUTURE_SESSION_STATUSES),
            )
        )

    async def count_all(self, conn: asyncpg.Connection, allocation_id: str) -> int:
        return int(await conn.fetchval("SELECT COUNT(*) FROM sessions WHERE allocation_id = $1", allocation_id))

    async def latest_scheduled_date(self, conn: asyncpg.Connection, allocation_id: str) -> Optional[date]:
        return await conn.fetchval(
            "SELECT MAX(scheduled_date) FROM sessions WHERE allocation_id = $1", allocation_id
        )

    async def insert_slot(self, conn: asyncpg.Connection, slot: SessionSlot) -> Optional[SessionRecord]:
        """Returns None when the slot already exists."""
        row = await conn.fetchrow(
            f"""
            INSERT INTO sessions (
                id, allocation_id, student_id, trainer_id, course_id,
                scheduled_date, scheduled_time, duration_minutes, status
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (allocation_id, scheduled_date, scheduled_time) DO NOTHING
            RETURNING {_SESSION_COLUMNS}
            """,
            str(uuid4()),
            slot.allocation_id,
            slot.student_id,
            slot.trainer_id,
            slot.course_id,
            slot.scheduled_date,
            slot.scheduled_time,
            slot.duration_minutes,
            SESSION_STATUS_SCHEDULED,
        )
        return _row_to_session(row) if row else None
