"""
Allocation registry (Postgres, read-only).

Allocations are written by the external allocation service; workers only read
them to verify that an assignment is durably visible and to drive the
session sweep.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from shared.models.fulfillment import ACTIVE_ALLOCATION_STATUSES, AllocationRecord
from shared.utils.json_utils import coerce_json_object

_ALLOCATION_COLUMNS = "id, student_id, course_id, trainer_id, status, metadata, created_at"


def _row_to_allocation(row: Any) -> AllocationRecord:
    trainer_id = row["trainer_id"]
    return AllocationRecord(
        allocation_id=str(row["id"]),
        student_id=str(row["student_id"]),
        course_id=str(row["course_id"]),
        trainer_id=str(trainer_id) if trainer_id is not None else None,
        status=str(row["status"]),
        metadata=coerce_json_object(row["metadata"]),
        created_at=row["created_at"],
    )


@dataclass(frozen=True)
class ActiveAllocationCursor:
    """Keyset position in `list_active()` order: (created_at, id)."""

    created_at: datetime
    allocation_id: str

    @classmethod
    def after(cls, allocation: AllocationRecord) -> "ActiveAllocationCursor":
        if allocation.created_at is None:
            raise ValueError(f"allocation {allocation.allocation_id} has no created_at")
        return cls(created_at=allocation.created_at, allocation_id=allocation.allocation_id)


class AllocationRegistry:
    async def get(self, conn: asyncpg.Connection, allocation_id: str) -> Optional[AllocationRecord]:
        row = await conn.fetchrow(
            f"SELECT {_ALLOCATION_COLUMNS} FROM allocations WHERE id = $1",
            allocation_id,
        )
        return _row_to_allocation(row) if row else None

    async def find_active(
        self, conn: asyncpg.Connection, student_id: str, course_id: str
    ) -> Optional[AllocationRecord]:
        row = await conn.fetchrow(
            f"""
            SELECT {_ALLOCATION_COLUMNS} FROM allocations
            WHERE student_id = $1 AND course_id = $2 AND status = ANY($3::text[])
            ORDER BY created_at DESC
            LIMIT 1
            """,
            student_id,
            course_id,
            sorted(ACTIVE_ALLOCATION_STATUSES),
        )
        return _row_to_allocation(row) if row else None

    async def list_active(
        self,
        conn: asyncpg.Connection,
        *,
        limit: int = 500,
        after: Optional[ActiveAllocationCursor] = None,
    ) -> List[AllocationRecord]:
        """One page of allocations with a trainer, oldest first; pass the last row as `after` for the next."""
        if after is None:
            rows = await conn.fetch(
                f"""
                SELECT {_ALLOCATION_COLUMNS} FROM allocations
                WHERE status = ANY($1::text[]) AND trainer_id IS NOT NULL
                ORDER BY created_at ASC, id ASC
                LIMIT $2
                """,
                sorted(ACTIVE_ALLOCATION_STATUSES),
                limit,
            )
        else:
            rows = await conn.fetch(
                f"""
                SELECT {_ALLOCATION_COLUMNS} FROM allocations
                WHERE status = ANY($1::text[]) AND trainer_id IS NOT NULL
                  AND (created_at, id) > ($3::timestamptz, $4::text)
                ORDER BY created_at ASC, id ASC
                LIMIT $2
                """,
                sorted(ACTIVE_ALLOCATION_STATUSES),
                limit,
                after.created_at,
                after.allocation_id,
            )
        return [_row_to_allocation(row) for row in rows]
