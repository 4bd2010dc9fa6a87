import json

import asyncpg
import pytest

from shared.models.event_envelope import EventEnvelope, EventType
from shared.models.fulfillment import PurchaseDraft
from shared.services.postgres_store import PostgresStore
from shared.services.processed_event_registry import ProcessedEventRegistry
from shared.services.purchase_registry import PurchaseRegistry


class DummyTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.events.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.events.append("rollback" if exc_type else "commit")
        return False


class DummyConnection:
    def __init__(self, *, fetchval=None, fetchrow=None, execute="UPDATE 1"):
        self.fetchval_result = fetchval
        self.fetchrow_result = fetchrow
        self.execute_result = execute
        self.queries = []
        self.events = []
        self.terminated = False

    async def fetchval(self, query, *args):
        self.queries.append((query, args))
        return self.fetchval_result

    async def fetchrow(self, query, *args):
        self.queries.append((query, args))
        return self.fetchrow_result

    async def execute(self, query, *args):
        self.queries.append((query, args))
        return self.execute_result

    def transaction(self):
        return DummyTransaction(self)

    def terminate(self):
        self.terminated = True


class DummyAcquire:
    def __init__(self, pool):
        self.pool = pool

    def __await__(self):
        async def _conn():
            return self.pool.conn

        return _conn().__await__()

    async def __aenter__(self):
        return self.pool.conn

    async def __aexit__(self, exc_type, exc, tb):
        await self.pool.release(self.pool.conn)
        return False


class DummyPool:
    def __init__(self, conn):
        self.conn = conn
        self.released = 0

    def acquire(self):
        return DummyAcquire(self)

    async def release(self, conn):
        self.released += 1


def _store(conn):
    store = PostgresStore(dsn="postgresql://test")
    store._pool = DummyPool(conn)
    return store


def _envelope():
    return EventEnvelope.build(
        event_type=EventType.PURCHASE_CONFIRMED,
        correlation_id="pay-1",
        payload={"studentId": "S1", "courseId": "C1"},
        source="payment-service",
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transaction_commits_and_releases():
    conn = DummyConnection()
    store = _store(conn)

    async with store.transaction() as tx_conn:
        assert tx_conn is conn

    assert conn.events == ["begin", "commit"]
    assert not conn.terminated
    assert store.pool.released == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_aborted_transaction_terminates_connection():
    conn = DummyConnection()
    store = _store(conn)

    with pytest.raises(asyncpg.exceptions.InFailedSQLTransactionError):
        async with store.transaction():
            raise asyncpg.exceptions.InFailedSQLTransactionError("current transaction is aborted")

    assert conn.events == ["begin", "rollback"]
    assert conn.terminated
    assert store.pool.released == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_other_errors_keep_the_connection():
    conn = DummyConnection()
    store = _store(conn)

    with pytest.raises(RuntimeError):
        async with store.transaction():
            raise RuntimeError("boom")

    assert not conn.terminated


@pytest.mark.unit
@pytest.mark.asyncio
async def test_try_advisory_lock_releases_only_when_acquired():
    held = DummyConnection(fetchval=True)
    async with _store(held).try_advisory_lock("sweep") as acquired:
        assert acquired is True
    assert "pg_advisory_unlock" in held.queries[-1][0]

    busy = DummyConnection(fetchval=False)
    async with _store(busy).try_advisory_lock("sweep") as acquired:
        assert acquired is False
    assert len(busy.queries) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_claim_reports_conflict_as_already_processed():
    registry = ProcessedEventRegistry()

    fresh = await registry.claim(DummyConnection(fetchval="evt-1"), _envelope())
    conn = DummyConnection(fetchval=None)
    duplicate = await registry.claim(conn, _envelope())

    assert fresh.already_processed is False
    assert fresh.event_id == "evt-1"
    assert duplicate.already_processed is True
    query, args = conn.queries[0]
    assert "ON CONFLICT (correlation_id, event_type) DO NOTHING" in query
    assert args[1:3] == ("PURCHASE_CONFIRMED", "pay-1")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_requires_a_claimed_row():
    registry = ProcessedEventRegistry()

    with pytest.raises(RuntimeError):
        await registry.complete(
            DummyConnection(execute="UPDATE 0"),
            correlation_id="pay-1",
            event_type=EventType.PURCHASE_CONFIRMED,
            payload={"purchaseId": "P1"},
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_insert_if_absent_targets_partial_index():
    conn = DummyConnection(fetchrow=None)

    result = await PurchaseRegistry().insert_if_absent(conn, PurchaseDraft("S1", "C1", 30, {"paymentId": "pay-1"}))

    assert result is None
    query, args = conn.queries[0]
    assert "ON CONFLICT (student_id, course_id) WHERE is_active = true DO NOTHING" in query
    assert json.loads(args[4]) == {"paymentId": "pay-1"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_lock_path_uses_transaction_advisory_lock():
    conn = DummyConnection()

    await PurchaseRegistry().lock_student_course(conn, "S1", "C1")

    query, args = conn.queries[0]
    assert "pg_advisory_xact_lock(hashtext($1))" in query
    assert args == ("purchase:S1:C1",)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_purchase_rows_decode_jsonb_text():
    row = {
        "id": "P1",
        "student_id": "S1",
        "course_id": "C1",
        "tier": 30,
        "metadata": '{"paymentId": "pay-1"}',
        "is_active": True,
        "created_at": None,
        "updated_at": None,
    }

    record = await PurchaseRegistry().find_active(DummyConnection(fetchrow=row), "S1", "C1")

    assert record.purchase_id == "P1"
    assert record.metadata == {"paymentId": "pay-1"}
