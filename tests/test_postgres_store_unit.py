"""Unit tests for PostgresStore with the connection pool stubbed out."""

import asyncio
import threading
from contextlib import contextmanager
from datetime import timedelta

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailable
from sessionguard.storage.models import Session, SessionContext
from sessionguard.storage.postgres import _SCHEMA, PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=1):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    def __init__(self, replies):
        self.replies = replies
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        for prefix, cursor in self.replies:
            if " ".join(sql.split()).startswith(prefix):
                return cursor
        return FakeCursor()


class FakePool:
    def __init__(self, replies=None, error=None):
        self.conn = FakeConnection(replies or [])
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://test"
    store.logger = get_logger(__name__)
    store._schema_lock = threading.Lock()
    store._schema_ready = True
    return store


def _session(clock):
    return Session.new(
        "user-1",
        timedelta(hours=1),
        SessionContext(ip="192.0.2.1", user_agent="ua"),
        generation=0,
        now=clock.now,
    )


@pytest.mark.parametrize(
    "error",
    [
        psycopg.OperationalError("server closed the connection"),
        psycopg.InterfaceError("connection already closed"),
        PoolTimeout("couldn't get a connection after 5.00 sec"),
        psycopg.DatabaseError("relation \"sg_session\" does not exist"),
        errors.DeadlockDetected("deadlock detected"),
    ],
)
async def test_driver_errors_become_store_unavailable(error):
    store = _store(FakePool(error=error))
    with pytest.raises(StoreUnavailable):
        await store.get_session("s1")


async def test_record_failure_takes_advisory_lock_and_locks_at_threshold(clock):
    locked_until = clock.now + timedelta(seconds=60)
    pool = FakePool(
        replies=[
            ("SELECT COUNT(*)", FakeCursor({"count": 5, "oldest": clock.now, "newest": clock.now})),
            ("SELECT locked_until", FakeCursor(None)),
            ("INSERT INTO sg_login_lock", FakeCursor({"locked_until": locked_until})),
        ]
    )
    store = _store(pool)

    counter = await store.record_failure(
        "id:abc", now=clock.now, window_seconds=60, threshold=5, lock_seconds=60
    )

    assert counter.count == 5
    assert counter.locked_until == locked_until
    first_sql, params = pool.conn.statements[0]
    assert first_sql.startswith("SELECT pg_advisory_xact_lock")
    assert params == ("id:abc",)


async def test_record_failure_below_threshold_leaves_lock_alone(clock):
    pool = FakePool(
        replies=[
            ("SELECT COUNT(*)", FakeCursor({"count": 2, "oldest": clock.now, "newest": clock.now})),
            ("SELECT locked_until", FakeCursor(None)),
        ]
    )
    store = _store(pool)
    counter = await store.record_failure(
        "id:abc", now=clock.now, window_seconds=60, threshold=5, lock_seconds=60
    )
    assert counter.locked_until is None
    assert not any(sql.startswith("INSERT INTO sg_login_lock") for sql, _ in pool.conn.statements)


async def test_save_session_conflict_raises(clock):
    pool = FakePool(replies=[("INSERT INTO sg_session", FakeCursor(rowcount=0))])
    with pytest.raises(ConstraintViolation):
        await _store(pool).save_session(_session(clock))


async def test_bump_generation_restamps_kept_session(clock):
    pool = FakePool(replies=[("INSERT INTO sg_user_generation", FakeCursor({"generation": 3}))])
    store = _store(pool)
    assert await store.bump_user_generation("user-1", keep_session_id="s1") == 3
    updates = [params for sql, params in pool.conn.statements if sql.startswith("UPDATE")]
    assert updates == [(3, "s1", "user-1"), (3, "s1", "user-1")]


async def test_consume_remember_token_deletes_returning(clock):
    row = {
        "id": "t1",
        "user_id": "user-1",
        "session_id": "s1",
        "created_at": clock.now,
        "expires_at": clock.now + timedelta(days=30),
        "device_fingerprint": "fp",
        "generation": 1,
        "rotation_count": 2,
    }
    pool = FakePool(replies=[("DELETE FROM sg_remember_token", FakeCursor(row))])
    token = await _store(pool).consume_remember_token("t1")
    assert token.session_id == "s1"
    assert token.rotation_count == 2
    assert pool.conn.statements[0][0].endswith("RETURNING *")


async def test_unique_violation_becomes_constraint_violation():
    store = _store(FakePool(error=errors.UniqueViolation("duplicate key value")))
    with pytest.raises(ConstraintViolation):
        await store.get_session("s1")


async def test_schema_is_created_once_under_concurrency():
    pool = FakePool()
    store = _store(pool)
    store._schema_ready = False

    await asyncio.gather(*(store.get_session(f"s{i}") for i in range(5)))

    creates = [sql for sql, _ in pool.conn.statements if sql.startswith("CREATE")]
    assert len(creates) == len(_SCHEMA)


async def test_extend_session_skips_revoked_rows(clock):
    pool = FakePool(replies=[("UPDATE sg_session SET expires_at", FakeCursor(rowcount=0))])
    expires_at = clock.now + timedelta(hours=2)

    assert not await _store(pool).extend_session("s1", expires_at, clock.now)
    sql, params = pool.conn.statements[0]
    assert sql.endswith("WHERE id = %s AND NOT revoked")
    assert params == (expires_at, clock.now, "s1")
