"""
Durable processed-events ledger (Postgres).

Contract:
- Idempotency key is `(correlation_id, event_type)`, not `event_id`:
  redelivered copies of one logical event may carry different transport ids.
- `claim()` runs on the caller's connection, inside the same transaction as
  the business write. The marker and the write commit or roll back together,
  so a crash between them cannot leave one without the other.
- A conflicting row means "already processed" and is reported as success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import asyncpg

from shared.models.event_envelope import EventEnvelope, EventType
from shared.utils.json_utils import coerce_json_object, dump_json_object

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    already_processed: bool
    event_id: Optional[str] = None


class ProcessedEventRegistry:
    """
    Postgres-backed idempotency guard.

    Stateless apart from SQL: every method takes the connection of the
    transaction it must participate in.
    """

    async def is_processed(
        self,
        conn: asyncpg.Connection,
        *,
        correlation_id: str,
        event_type: EventType,
    ) -> bool:
        row = await conn.fetchval(
            """
            SELECT 1 FROM processed_events
            WHERE correlation_id = $1 AND event_type = $2
            """,
            correlation_id,
            event_type.value,
        )
        return row is not None

    async def claim(self, conn: asyncpg.Connection, envelope: EventEnvelope) -> ClaimResult:
        """
        Insert the ledger row for `envelope` on `conn`.

        Returns `already_processed=True` when another transaction committed
        the same key first. A concurrent uncommitted claim blocks here until
        that transaction ends, then resolves either way.
        """
        if not envelope.correlation_id:
            raise ValueError("correlation_id is required")

        inserted = await conn.fetchval(
            """
            INSERT INTO processed_events (
                event_id, event_type, correlation_id, source, version, payload
            )
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            ON CONFLICT (correlation_id, event_type) DO NOTHING
            RETURNING event_id
            """,
            envelope.event_id,
            envelope.event_type.value,
            envelope.correlation_id,
            envelope.source,
            envelope.version,
            dump_json_object(envelope.payload),
        )
        if inserted is None:
            logger.info(
                f"Event already processed (correlation_id={envelope.correlation_id}, "
                f"event_type={envelope.event_type.value})"
            )
            return ClaimResult(already_processed=True)
        return ClaimResult(already_processed=False, event_id=str(inserted))

    async def complete(
        self,
        conn: asyncpg.Connection,
        *,
        correlation_id: str,
        event_type: EventType,
        payload: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        """
        Stamp the claimed row with the result payload before commit.

        Must run on the claiming connection: the row is invisible to other
        transactions until commit, so after commit it is never touched again.
        """
        status = await conn.execute(
            """
            UPDATE processed_events
            SET payload = $3::jsonb, processed_at = NOW(), error_message = $4
            WHERE correlation_id = $1 AND event_type = $2
            """,
            correlation_id,
            event_type.value,
            dump_json_object(payload),
            error_message,
        )
        if status != "UPDATE 1":
            raise RuntimeError(
                f"complete() without a claim (correlation_id={correlation_id}, event_type={event_type.value})"
            )

    async def get_result(
        self,
        conn: asyncpg.Connection,
        *,
        correlation_id: str,
        event_type: EventType,
    ) -> Optional[Dict[str, Any]]:
        """Result payload stamped by `complete()`, or None when never processed."""
        payload = await conn.fetchval(
            """
            SELECT payload FROM processed_events
            WHERE correlation_id = $1 AND event_type = $2
            """,
            correlation_id,
            event_type.value,
        )
        if payload is None:
            return None
        return coerce_json_object(payload)
