"""
Purchase registry (Postgres).

Two race-free creation paths:
- `insert_if_absent()`: `INSERT ... ON CONFLICT ... DO NOTHING` against the
  partial unique index `unique_active_purchase`. Only valid when the index
  exists; against a missing index Postgres raises 42P10 and the transaction
  is dead.
- `lock_student_course()` + `find_active_for_update()` + `insert()`: the
  advisory-lock path for environments where the index was never migrated.

`IndexExistenceCache` remembers which path applies.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import uuid4

import asyncpg

from shared.config.app_config import AppConfig
from shared.models.fulfillment import PurchaseDraft, PurchaseRecord
from shared.services.postgres_store import ACTIVE_PURCHASE_INDEX
from shared.utils.json_utils import coerce_json_object, dump_json_object

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_PURCHASE_COLUMNS = "id, student_id, course_id, tier, metadata, is_active, created_at, updated_at"


def _row_to_purchase(row: Any) -> PurchaseRecord:
    return PurchaseRecord(
        purchase_id=str(row["id"]),
        student_id=str(row["student_id"]),
        course_id=str(row["course_id"]),
        tier=int(row["tier"]),
        metadata=coerce_json_object(row["metadata"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@dataclass
class IndexExistenceCache:
    """
    Cached answer to "does unique_active_purchase exist?".

    `value is None` means unknown. The clock is injected so tests can move
    time; the warning throttle shares it.
    """

    ttl_seconds: float = 300.0
    warning_interval_seconds: float = 60.0
    clock: Clock = field(default=time.monotonic)
    value: Optional[bool] = None
    checked_at: Optional[float] = None
    last_warning_at: Optional[float] = None

    def get(self) -> Optional[bool]:
        if self.value is None or self.checked_at is None:
            return None
        if self.clock() - self.checked_at >= self.ttl_seconds:
            return None
        return self.value

    def store(self, value: bool) -> None:
        self.value = value
        self.checked_at = self.clock()

    def invalidate(self) -> None:
        """Force the fallback path until the next successful check."""
        self.store(False)

    def should_warn(self) -> bool:
        now = self.clock()
        if self.last_warning_at is not None and now - self.last_warning_at < self.warning_interval_seconds:
            return False
        self.last_warning_at = now
        return True


class PurchaseRegistry:
    async def find_active(self, conn: asyncpg.Connection, student_id: str, course_id: str) -> Optional[PurchaseRecord]:
        row = await conn.fetchrow(
            f"""
            SELECT {_PURCHASE_COLUMNS} FROM purchases
            WHERE student_id = $1 AND course_id = $2 AND is_active = true
            ORDER BY created_at DESC
            LIMIT 1
            """,
            student_id,
            course_id,
        )
        return _row_to_purchase(row) if row else None

    async def find_latest(self, conn: asyncpg.Connection, student_id: str, course_id: str) -> Optional[PurchaseRecord]:
        row = await conn.fetchrow(
            f"""
            SELECT {_PURCHASE_COLUMNS} FROM purchases
            WHERE student_id = $1 AND course_id = $2
            ORDER BY created_at DESC
            LIMIT 1
            """,
            student_id,
            course_id,
        )
        return _row_to_purchase(row) if row else None

    async def active_index_exists(self, conn: asyncpg.Connection) -> bool:
        return bool(
            await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM pg_indexes
                    WHERE schemaname = current_schema()
                      AND tablename = 'purchases'
                      AND indexname = $1
                )
                """,
                ACTIVE_PURCHASE_INDEX,
            )
        )

    async def insert_if_absent(self, conn: asyncpg.Connection, draft: PurchaseDraft) -> Optional[PurchaseRecord]:
        """Returns None when an active purchase already exists."""
        row = await conn.fetchrow(
            f"""
            INSERT INTO purchases (id, student_id, course_id, tier, metadata, is_active)
            VALUES ($1, $2, $3, $4, $5::jsonb, true)
            ON CONFLICT (student_id, course_id) WHERE is_active = true DO NOTHING
            RETURNING {_PURCHASE_COLUMNS}
            """,
            str(uuid4()),
            draft.student_id,
            draft.course_id,
            draft.tier,
            dump_json_object(draft.metadata),
        )
        return _row_to_purchase(row) if row else None

    async def lock_student_course(self, conn: asyncpg.Connection, student_id: str, course_id: str) -> None:
        """Transaction-scoped advisory lock; released on commit/rollback."""
        await conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext($1))",
            AppConfig.get_purchase_lock_key(student_id, course_id),
        )

    async def find_active_for_update(
        self, conn: asyncpg.Connection, student_id: str, course_id: str
    ) -> Optional[PurchaseRecord]:
        row = await conn.fetchrow(
            f"""
            SELECT {_PURCHASE_COLUMNS} FROM purchases
            WHERE student_id = $1 AND course_id = $2 AND is_active = true
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            student_id,
            course_id,
        )
        return _row_to_purchase(row) if row else None

    async def insert(self, conn: asyncpg.Connection, draft: PurchaseDraft) -> PurchaseRecord:
        row = await conn.fetchrow(
            f"""
            INSERT INTO purchases (id, student_id, course_id, tier, metadata, is_active)
            VALUES ($1, $2, $3, $4, $5::jsonb, true)
            RETURNING {_PURCHASE_COLUMNS}
            """,
            str(uuid4()),
            draft.student_id,
            draft.course_id,
            draft.tier,
            dump_json_object(draft.metadata),
        )
        return _row_to_purchase(row)
