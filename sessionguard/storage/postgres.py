from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailable
from sessionguard.storage.models import AttemptCounter, RememberToken, Session

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sg_login_attempt (
        key TEXT NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS sg_login_attempt_key_idx ON sg_login_attempt (key, attempted_at)",
    """
    CREATE TABLE IF NOT EXISTS sg_login_lock (
        key TEXT PRIMARY KEY,
        locked_until TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sg_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        device_fingerprint TEXT NOT NULL,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        generation BIGINT NOT NULL DEFAULT 0,
        role TEXT NOT NULL DEFAULT 'user',
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_reason TEXT,
        ip_addr TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS sg_session_user_idx ON sg_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS sg_user_generation (
        user_id TEXT PRIMARY KEY,
        generation BIGINT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sg_remember_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        device_fingerprint TEXT NOT NULL,
        generation BIGINT NOT NULL DEFAULT 0,
        rotation_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS sg_remember_token_user_idx ON sg_remember_token (user_id)",
)

_SESSION_COLUMNS = (
    "id, user_id, created_at, expires_at, last_activity_at, device_fingerprint, "
    "remember_me, generation, role, revoked, revoked_reason, ip_addr, user_agent"
)


class PostgresStore:
    """Durable counter and session store on top of a psycopg connection pool.

    The pool is synchronous; every public coroutine runs its SQL in a worker
    thread. Counter updates serialize per key with a transaction-scoped
    advisory lock so concurrent failures are never lost.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with self._connect() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
            self._schema_ready = True

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def call() -> T:
            self._ensure_schema()
            return fn(*args)

        try:
            return await asyncio.to_thread(call)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("duplicate key", {"operation": fn.__name__}) from exc
        except (psycopg.Error, PoolTimeout) as exc:
            self.logger.warning("postgres_operation_failed", operation=fn.__name__, error=str(exc))
            raise StoreUnavailable("postgres unavailable", {"operation": fn.__name__}) from exc

    # ------------------------------------------------------------------
    # attempt counters
    # ------------------------------------------------------------------
    def _counter_from_rows(
        self, key: str, stats: dict, lock_row: Optional[dict], now: datetime
    ) -> AttemptCounter:
        locked_until = lock_row["locked_until"] if lock_row else None
        if locked_until is not None and locked_until <= now:
            locked_until = None
        return AttemptCounter(
            key=key,
            count=int(stats["count"] or 0),
            window_start=stats.get("oldest"),
            last_attempt_at=stats.get("newest"),
            locked_until=locked_until,
        )

    def _record_failure(
        self, key: str, now: datetime, window_seconds: int, threshold: int, lock_seconds: int
    ) -> AttemptCounter:
        cutoff = now - timedelta(seconds=window_seconds)
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))
            conn.execute(
                "DELETE FROM sg_login_attempt WHERE key = %s AND attempted_at <= %s",
                (key, cutoff),
            )
            conn.execute(
                "INSERT INTO sg_login_attempt (key, attempted_at) VALUES (%s, %s)",
                (key, now),
            )
            stats = conn.execute(
                """
                SELECT COUNT(*) AS count, MIN(attempted_at) AS oldest, MAX(attempted_at) AS newest
                FROM sg_login_attempt WHERE key = %s
                """,
                (key,),
            ).fetchone()
            lock_row = conn.execute(
                "SELECT locked_until FROM sg_login_lock WHERE key = %s AND locked_until > %s",
                (key, now),
            ).fetchone()
            if lock_row is None and int(stats["count"]) >= threshold:
                lock_row = conn.execute(
                    """
                    INSERT INTO sg_login_lock (key, locked_until) VALUES (%s, %s)
                    ON CONFLICT (key) DO UPDATE SET locked_until = EXCLUDED.locked_until
                    RETURNING locked_until
                    """,
                    (key, now + timedelta(seconds=lock_seconds)),
                ).fetchone()
        return self._counter_from_rows(key, stats, lock_row, now)

    def _get_counter(self, key: str, now: datetime, window_seconds: int) -> AttemptCounter:
        cutoff = now - timedelta(seconds=window_seconds)
        with self._connect() as conn:
            stats = conn.execute(
                """
                SELECT COUNT(*) AS count, MIN(attempted_at) AS oldest, MAX(attempted_at) AS newest
                FROM sg_login_attempt WHERE key = %s AND attempted_at > %s
                """,
                (key, cutoff),
            ).fetchone()
            lock_row = conn.execute(
                "SELECT locked_until FROM sg_login_lock WHERE key = %s", (key,)
            ).fetchone()
        return self._counter_from_rows(key, stats, lock_row, now)

    def _clear_attempts(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sg_login_attempt WHERE key = %s", (key,))

    async def record_failure(
        self,
        key: str,
        *,
        now: datetime,
        window_seconds: int,
        threshold: int,
        lock_seconds: int,
    ) -> AttemptCounter:
        return await self._run(
            self._record_failure, key, now, window_seconds, threshold, lock_seconds
        )

    async def get_counter(
        self, key: str, *, now: datetime, window_seconds: int
    ) -> AttemptCounter:
        return await self._run(self._get_counter, key, now, window_seconds)

    async def clear_attempts(self, key: str) -> None:
        await self._run(self._clear_attempts, key)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity_at=row["last_activity_at"],
            device_fingerprint=row["device_fingerprint"],
            remember_me=bool(row.get("remember_me")),
            generation=int(row.get("generation") or 0),
            role=row.get("role") or "user",
            revoked=bool(row.get("revoked")),
            revoked_reason=row.get("revoked_reason"),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> RememberToken:
        return RememberToken(
            id=row["id"],
            user_id=str(row["user_id"]),
            session_id=str(row["session_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device_fingerprint=row["device_fingerprint"],
            generation=int(row.get("generation") or 0),
            rotation_count=int(row.get("rotation_count") or 0),
        )

    def _save_session(self, session: Session) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                INSERT INTO sg_session ({_SESSION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    expires_at = EXCLUDED.expires_at,
                    last_activity_at = EXCLUDED.last_activity_at,
                    generation = EXCLUDED.generation
                WHERE sg_session.user_id = EXCLUDED.user_id AND NOT sg_session.revoked
                """,
                (
                    session.id,
                    session.user_id,
                    session.created_at,
                    session.expires_at,
                    session.last_activity_at,
                    session.device_fingerprint,
                    session.remember_me,
                    session.generation,
                    session.role,
                    session.revoked,
                    session.revoked_reason,
                    session.ip_addr,
                    session.user_agent,
                ),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "session id already in use", {"session_id": session.id}
                )

    def _get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sg_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def _touch_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sg_session SET last_activity_at = %s WHERE id = %s AND NOT revoked",
                (at, session_id),
            )
            return cur.rowcount > 0

    def _extend_session(self, session_id: str, expires_at: datetime, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sg_session SET expires_at = %s, last_activity_at = %s
                WHERE id = %s AND NOT revoked
                """,
                (expires_at, at, session_id),
            )
            return cur.rowcount > 0

    def _revoke_session(self, session_id: str, reason: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sg_session SET revoked = TRUE, revoked_reason = %s
                WHERE id = %s AND NOT revoked
                """,
                (reason, session_id),
            )
            return cur.rowcount > 0

    def _list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sg_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def _get_user_generation(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT generation FROM sg_user_generation WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["generation"]) if row else 0

    def _bump_user_generation(self, user_id: str, keep_session_id: Optional[str]) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO sg_user_generation (user_id, generation) VALUES (%s, 1)
                ON CONFLICT (user_id) DO UPDATE
                    SET generation = sg_user_generation.generation + 1
                RETURNING generation
                """,
                (user_id,),
            ).fetchone()
            generation = int(row["generation"])
            if keep_session_id:
                conn.execute(
                    """
                    UPDATE sg_session SET generation = %s
                    WHERE id = %s AND user_id = %s AND NOT revoked
                    """,
                    (generation, keep_session_id, user_id),
                )
                conn.execute(
                    """
                    UPDATE sg_remember_token SET generation = %s
                    WHERE session_id = %s AND user_id = %s
                    """,
                    (generation, keep_session_id, user_id),
                )
        return generation

    def _revoke_user_sessions(
        self, user_id: str, reason: str, except_session_id: Optional[str]
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sg_session SET revoked = TRUE, revoked_reason = %s
                WHERE user_id = %s AND NOT revoked AND id IS DISTINCT FROM %s
                """,
                (reason, user_id, except_session_id),
            )
            return cur.rowcount

    def _save_remember_token(self, token: RememberToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sg_remember_token
                        (id, user_id, session_id, created_at, expires_at, device_fingerprint, generation, rotation_count)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.session_id,
                        token.created_at,
                        token.expires_at,
                        token.device_fingerprint,
                        token.generation,
                        token.rotation_count,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("remember token already exists") from exc

    def _get_remember_token(self, token_id: str) -> Optional[RememberToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sg_remember_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def _consume_remember_token(self, token_id: str) -> Optional[RememberToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM sg_remember_token WHERE id = %s RETURNING *", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def _revoke_user_remember_tokens(self, user_id: str, except_session_id: Optional[str]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM sg_remember_token
                WHERE user_id = %s AND session_id IS DISTINCT FROM %s
                """,
                (user_id, except_session_id),
            )
            return cur.rowcount

    def _purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            sessions = conn.execute("DELETE FROM sg_session WHERE expires_at <= %s", (now,)).rowcount
            tokens = conn.execute(
                "DELETE FROM sg_remember_token WHERE expires_at <= %s", (now,)
            ).rowcount
            conn.execute("DELETE FROM sg_login_lock WHERE locked_until <= %s", (now,))
        return sessions + tokens

    async def save_session(self, session: Session) -> None:
        await self._run(self._save_session, session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self._run(self._get_session, session_id)

    async def touch_session(self, session_id: str, at: datetime) -> bool:
        return await self._run(self._touch_session, session_id, at)

    async def extend_session(self, session_id: str, expires_at: datetime, at: datetime) -> bool:
        return await self._run(self._extend_session, session_id, expires_at, at)

    async def revoke_session(self, session_id: str, reason: str) -> bool:
        return await self._run(self._revoke_session, session_id, reason)

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        return await self._run(self._list_user_sessions, user_id)

    async def get_user_generation(self, user_id: str) -> int:
        return await self._run(self._get_user_generation, user_id)

    async def bump_user_generation(
        self, user_id: str, keep_session_id: Optional[str] = None
    ) -> int:
        return await self._run(self._bump_user_generation, user_id, keep_session_id)

    async def revoke_user_sessions(
        self, user_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> int:
        return await self._run(self._revoke_user_sessions, user_id, reason, except_session_id)

    async def save_remember_token(self, token: RememberToken) -> None:
        await self._run(self._save_remember_token, token)

    async def get_remember_token(self, token_id: str) -> Optional[RememberToken]:
        return await self._run(self._get_remember_token, token_id)

    async def consume_remember_token(self, token_id: str) -> Optional[RememberToken]:
        return await self._run(self._consume_remember_token, token_id)

    async def revoke_user_remember_tokens(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        return await self._run(self._revoke_user_remember_tokens, user_id, except_session_id)

    async def purge_expired(self, now: datetime) -> int:
        return await self._run(self._purge_expired, now)

    async def close(self) -> None:
        await asyncio.to_thread(self.pool.close)
