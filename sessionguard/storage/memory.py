from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import AttemptCounter, RememberToken, Session


@dataclass
class _CounterState:
    hits: List[datetime] = field(default_factory=list)
    locked_until: Optional[datetime] = None


class MemoryStore:
    """In-process counter and session store.

    Used for development and tests, and by the login guard as its fallback
    when the shared store is unreachable. All state lives behind a single
    re-entrant lock and no method awaits while holding it, so every
    operation is atomic with respect to both threads and coroutines.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self._counters: Dict[str, _CounterState] = {}
        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, set[str]] = {}
        self._generations: Dict[str, int] = {}
        self._remember: Dict[str, RememberToken] = {}

    # ------------------------------------------------------------------
    # attempt counters
    # ------------------------------------------------------------------
    @staticmethod
    def _prune(state: _CounterState, now: datetime, window_seconds: int) -> None:
        cutoff = now - timedelta(seconds=window_seconds)
        state.hits = [hit for hit in state.hits if hit > cutoff]

    @staticmethod
    def _snapshot(key: str, state: Optional[_CounterState], now: datetime) -> AttemptCounter:
        if state is None:
            return AttemptCounter(key=key)
        locked_until = state.locked_until
        if locked_until is not None and locked_until <= now:
            locked_until = None
        return AttemptCounter(
            key=key,
            count=len(state.hits),
            window_start=state.hits[0] if state.hits else None,
            last_attempt_at=state.hits[-1] if state.hits else None,
            locked_until=locked_until,
        )

    async def record_failure(
        self,
        key: str,
        *,
        now: datetime,
        window_seconds: int,
        threshold: int,
        lock_seconds: int,
    ) -> AttemptCounter:
        with self._data_lock:
            state = self._counters.setdefault(key, _CounterState())
            self._prune(state, now, window_seconds)
            state.hits.append(now)
            state.hits.sort()
            active_lock = state.locked_until is not None and state.locked_until > now
            if len(state.hits) >= threshold and not active_lock:
                state.locked_until = now + timedelta(seconds=lock_seconds)
            return self._snapshot(key, state, now)

    async def get_counter(
        self, key: str, *, now: datetime, window_seconds: int
    ) -> AttemptCounter:
        with self._data_lock:
            state = self._counters.get(key)
            if state is not None:
                self._prune(state, now, window_seconds)
            return self._snapshot(key, state, now)

    async def clear_attempts(self, key: str) -> None:
        with self._data_lock:
            state = self._counters.get(key)
            if state is None:
                return
            state.hits = []
            if state.locked_until is None:
                self._counters.pop(key, None)

    def purge_counters(self, now: datetime, window_seconds: int) -> int:
        """Drop counters with no in-window failures and no active lock."""
        removed = 0
        with self._data_lock:
            for key in list(self._counters):
                state = self._counters[key]
                self._prune(state, now, window_seconds)
                locked = state.locked_until is not None and state.locked_until > now
                if not state.hits and not locked:
                    del self._counters[key]
                    removed += 1
        return removed

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    async def save_session(self, session: Session) -> None:
        with self._data_lock:
            existing = self._sessions.get(session.id)
            if existing is not None and existing.user_id != session.user_id:
                raise ConstraintViolation(
                    "session id already in use", {"session_id": session.id}
                )
            self._sessions[session.id] = copy.copy(session)
            self._user_sessions.setdefault(session.user_id, set()).add(session.id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self._sessions.get(session_id)
            return copy.copy(session) if session else None

    async def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self._sessions.get(session_id)
            if session is None or session.revoked:
                return False
            session.last_activity_at = at
            return True

    async def extend_session(self, session_id: str, expires_at: datetime, at: datetime) -> bool:
        with self._data_lock:
            session = self._sessions.get(session_id)
            if session is None or session.revoked:
                return False
            session.expires_at = expires_at
            session.last_activity_at = at
            return True

    async def revoke_session(self, session_id: str, reason: str) -> bool:
        with self._data_lock:
            session = self._sessions.get(session_id)
            if session is None or session.revoked:
                return False
            session.revoked = True
            session.revoked_reason = reason
            return True

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            ids = self._user_sessions.get(user_id, set())
            sessions = [copy.copy(self._sessions[sid]) for sid in ids if sid in self._sessions]
        return sorted(sessions, key=lambda s: s.created_at)

    async def get_user_generation(self, user_id: str) -> int:
        with self._data_lock:
            return self._generations.get(user_id, 0)

    async def bump_user_generation(
        self, user_id: str, keep_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            generation = self._generations.get(user_id, 0) + 1
            self._generations[user_id] = generation
            if keep_session_id:
                kept = self._sessions.get(keep_session_id)
                if kept is not None and kept.user_id == user_id and not kept.revoked:
                    kept.generation = generation
                for token_id, token in self._remember.items():
                    if token.user_id == user_id and token.session_id == keep_session_id:
                        self._remember[token_id] = replace(token, generation=generation)
            return generation

    async def revoke_user_sessions(
        self, user_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> int:
        revoked = 0
        with self._data_lock:
            for sid in self._user_sessions.get(user_id, set()):
                if sid == except_session_id:
                    continue
                session = self._sessions.get(sid)
                if session is not None and not session.revoked:
                    session.revoked = True
                    session.revoked_reason = reason
                    revoked += 1
        return revoked

    # ------------------------------------------------------------------
    # remember tokens
    # ------------------------------------------------------------------
    async def save_remember_token(self, token: RememberToken) -> None:
        with self._data_lock:
            if token.id in self._remember:
                raise ConstraintViolation("remember token already exists")
            self._remember[token.id] = token

    async def get_remember_token(self, token_id: str) -> Optional[RememberToken]:
        with self._data_lock:
            return self._remember.get(token_id)

    async def consume_remember_token(self, token_id: str) -> Optional[RememberToken]:
        with self._data_lock:
            return self._remember.pop(token_id, None)

    async def revoke_user_remember_tokens(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                token_id
                for token_id, token in self._remember.items()
                if token.user_id == user_id
                and (except_session_id is None or token.session_id != except_session_id)
            ]
            for token_id in doomed:
                del self._remember[token_id]
        return len(doomed)

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------
    async def purge_expired(self, now: datetime) -> int:
        removed = 0
        with self._data_lock:
            for sid in [sid for sid, s in self._sessions.items() if s.is_expired(now)]:
                session = self._sessions.pop(sid)
                self._user_sessions.get(session.user_id, set()).discard(sid)
                removed += 1
            for token_id in [t for t, tok in self._remember.items() if tok.is_expired(now)]:
                del self._remember[token_id]
                removed += 1
        return removed

    async def close(self) -> None:
        return None
