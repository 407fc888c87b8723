"""Storage contracts shared by the memory, Redis and Postgres backends.

Every method is a coroutine so the services can bound each round-trip with
``asyncio.wait_for``. Each mutation is a single atomic step in the backend;
no backend requires callers to hold a lock across calls.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from sessionguard.storage.models import AttemptCounter, RememberToken, Session


def counter_key(scope: str, value: str) -> str:
    """Build a collision-resistant counter key for an identifier or IP.

    The raw value is hashed so delimiters in user input cannot collide with
    another scope and so the store never holds plaintext identifiers.
    """

    normalized = (value or "").strip().lower()
    digest = hashlib.sha256(f"{scope}:{normalized}".encode()).hexdigest()
    return f"{scope}:{digest}"


def to_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_millis(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)


class CounterStore(Protocol):
    async def record_failure(
        self,
        key: str,
        *,
        now: datetime,
        window_seconds: int,
        threshold: int,
        lock_seconds: int,
    ) -> AttemptCounter:
        """Add one failure and return the counter as seen after the write.

        Sets ``locked_until`` when the in-window count reaches ``threshold`` and
        no lock is active; an active lock is never shortened or extended.
        """

    async def get_counter(
        self, key: str, *, now: datetime, window_seconds: int
    ) -> AttemptCounter:
        ...

    async def clear_attempts(self, key: str) -> None:
        """Drop recorded failures for ``key``; an active lock survives."""

    async def close(self) -> None:
        ...


class SessionStore(Protocol):
    async def save_session(self, session: Session) -> None:
        ...

    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    async def touch_session(self, session_id: str, at: datetime) -> bool:
        """Update last activity; never resurrects a revoked or missing session."""

    async def extend_session(self, session_id: str, expires_at: datetime, at: datetime) -> bool:
        """Move the expiry of a live session in one step.

        Returns False, leaving the record alone, when the session is missing
        or revoked.
        """

    async def revoke_session(self, session_id: str, reason: str) -> bool:
        """Mark a session revoked. Returns False if it was missing or already revoked."""

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        ...

    async def get_user_generation(self, user_id: str) -> int:
        ...

    async def bump_user_generation(
        self, user_id: str, keep_session_id: Optional[str] = None
    ) -> int:
        """Atomically increment the user's generation.

        The kept session and its remember tokens are re-stamped with the new
        generation in the same step so they stay valid.
        """

    async def revoke_user_sessions(
        self, user_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> int:
        ...

    async def save_remember_token(self, token: RememberToken) -> None:
        ...

    async def get_remember_token(self, token_id: str) -> Optional[RememberToken]:
        ...

    async def consume_remember_token(self, token_id: str) -> Optional[RememberToken]:
        """Atomic get-and-delete; a second consume of the same id returns None."""

    async def revoke_user_remember_tokens(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        ...

    async def purge_expired(self, now: datetime) -> int:
        ...

    async def close(self) -> None:
        ...
