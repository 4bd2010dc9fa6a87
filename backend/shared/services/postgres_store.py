"""
Durable store (Postgres) shared by the fulfillment workers.

Contract:
- One asyncpg pool per worker process.
- `transaction()` hands out a connection inside a transaction. If the
  transaction ends in an aborted state (25P02 / 42P10) the connection is
  terminated instead of being returned to the pool in a usable state.
- `ensure_schema()` is idempotent DDL for `processed_events`, `purchases`,
  `allocations` and `sessions`. The same statements live in
  `backend/migrations/`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg

from shared.config.settings import DatabaseSettings, get_settings
from shared.exceptions.pipeline import TRANSACTION_ABORTED_ERRORS

logger = logging.getLogger(__name__)

ACTIVE_PURCHASE_INDEX = "unique_active_purchase"

SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        id BIGSERIAL PRIMARY KEY,
        event_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        correlation_id TEXT NOT NULL,
        source TEXT NOT NULL,
        version TEXT NOT NULL DEFAULT '1.0',
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        error_message TEXT,
        CONSTRAINT processed_events_correlation_type_key UNIQUE (correlation_id, event_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_processed_events_event_id ON processed_events(event_id)",
    """
    CREATE TABLE IF NOT EXISTS purchases (
        id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        course_id TEXT NOT NULL,
        tier INTEGER NOT NULL CHECK (tier > 0),
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_purchases_student_course ON purchases(student_id, course_id)",
    """
    CREATE TABLE IF NOT EXISTS allocations (
        id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        course_id TEXT NOT NULL,
        trainer_id TEXT,
        status TEXT NOT NULL CHECK (status IN ('pending', 'approved', 'active', 'rejected')),
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS unique_active_allocation
    ON allocations(student_id, course_id)
    WHERE status IN ('approved', 'active')
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        allocation_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        trainer_id TEXT NOT NULL,
        course_id TEXT NOT NULL,
        scheduled_date DATE NOT NULL,
        scheduled_time TIME NOT NULL,
        duration_minutes INTEGER NOT NULL DEFAULT 40,
        status TEXT NOT NULL DEFAULT 'scheduled',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT sessions_allocation_slot_key UNIQUE (allocation_id, scheduled_date, scheduled_time)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_allocation_date ON sessions(allocation_id, scheduled_date)",
]

ACTIVE_PURCHASE_INDEX_STATEMENT = f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_PURCHASE_INDEX}
    ON purchases(student_id, course_id)
    WHERE is_active = true
"""


class PostgresStore:
    """asyncpg pool plus transaction helpers for the fulfillment tables."""

    def __init__(
        self,
        *,
        dsn: Optional[str] = None,
        database: Optional[DatabaseSettings] = None,
        schema: Optional[str] = None,
    ):
        self._database = database or get_settings().database
        self._dsn = dsn or self._database.postgres_url
        # Unqualified table names resolve here when set.
        self._schema = schema
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if not self._pool:
            raise RuntimeError("PostgresStore not connected")
        return self._pool

    async def connect(self) -> None:
        if self._pool:
            return

        self._pool = await asyncpg.create_pool(
            self._dsn,
            min_size=self._database.pool_min_size,
            max_size=self._database.pool_max_size,
            command_timeout=self._database.command_timeout,
            server_settings={"search_path": self._schema} if self._schema else None,
        )
        if self._database.ensure_schema:
            await self.ensure_schema()
        logger.info("PostgresStore connected")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            if self._schema:
                await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {self._schema}")
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
            if self._database.purchase_create_active_index:
                await conn.execute(ACTIVE_PURCHASE_INDEX_STATEMENT)
            else:
                logger.warning(
                    f"Schema bootstrap skipped {ACTIVE_PURCHASE_INDEX}; purchases use the advisory-lock path"
                )

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Connection for reads outside a transaction."""
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Connection inside a transaction.

        Commit on clean exit, rollback on error. A connection that hit an
        aborted-transaction error is terminated so the pool replaces it.
        """
        pool = self.pool
        conn = await pool.acquire()
        discard = False
        try:
            async with conn.transaction():
                yield conn
        except TRANSACTION_ABORTED_ERRORS as e:
            discard = True
            logger.warning(f"Discarding Postgres connection after aborted transaction: {e!r}")
            raise
        finally:
            if discard:
                conn.terminate()
            await pool.release(conn)

    @asynccontextmanager
    async def try_advisory_lock(self, key: str) -> AsyncIterator[bool]:
        """
        Session-level advisory lock held for the body; yields False (and
        holds nothing) when another session owns it.
        """
        async with self.pool.acquire() as conn:
            acquired = bool(await conn.fetchval("SELECT pg_try_advisory_lock(hashtext($1))", key))
            try:
                yield acquired
            finally:
                if acquired:
                    await conn.execute("SELECT pg_advisory_unlock(hashtext($1))", key)