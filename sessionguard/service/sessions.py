from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sessionguard.config import FingerprintMode, Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    RememberTokenInvalidError,
    ServiceUnavailableError,
    SessionExpiredError,
    SessionFingerprintMismatchError,
    SessionInvalidError,
    SessionRevokedError,
    SessionUnavailableError,
)
from sessionguard.storage.common import SessionStore
from sessionguard.storage.errors import StoreUnavailable
from sessionguard.storage.models import (
    RememberToken,
    Session,
    SessionContext,
    hash_remember_token,
)

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class SessionGrant:
    session: Session
    remember_token: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


@dataclass
class SessionValidation:
    valid: bool
    reason: Optional[str] = None
    session: Optional[Session] = None
    flagged: bool = False


class SessionManager:
    """Server-side session lifecycle and remember-me token rotation.

    A session is valid only while it is unrevoked, unexpired and stamped with
    a generation at least the user's current one. Bumping the generation
    invalidates every older session in one atomic write, which is how "log
    out everywhere" wins races with concurrent logins.

    Validation fails closed: a store error or timeout yields
    ``reason="unavailable"``.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        session_ttl: timedelta = timedelta(hours=24),
        remember_ttl: timedelta = timedelta(days=30),
        fingerprint_mode: FingerprintMode = FingerprintMode.STRICT,
        timeout: float = 2.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.session_ttl = session_ttl
        self.remember_ttl = remember_ttl
        self.fingerprint_mode = FingerprintMode(fingerprint_mode)
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls, store: SessionStore, settings: Settings, **kwargs: Any
    ) -> "SessionManager":
        return cls(
            store,
            session_ttl=timedelta(minutes=settings.session_ttl_minutes),
            remember_ttl=timedelta(days=settings.remember_token_ttl_days),
            fingerprint_mode=settings.fingerprint_mode,
            timeout=settings.store_timeout_seconds,
            **kwargs,
        )

    def _now(self) -> datetime:
        return self._clock()

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("session store timed out") from exc

    async def _best_effort(self, awaitable: Awaitable[T]) -> Optional[T]:
        try:
            return await self._bounded(awaitable)
        except StoreUnavailable as exc:
            logger.warning("session_store_best_effort_failed", error=exc.message)
            return None

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    async def create_session(
        self,
        user_id: str,
        context: SessionContext,
        *,
        remember_me: bool = False,
        ttl: Optional[timedelta] = None,
        role: str = "user",
        generation: Optional[int] = None,
        remember_expires_at: Optional[datetime] = None,
        rotation_count: int = 0,
    ) -> SessionGrant:
        """Persist a new session and, for ``remember_me``, a remember token.

        ``generation`` pins the session to a generation the caller already
        verified; by default the user's current generation is read. A
        remember-me session lives exactly as long as its remember token.
        """
        now = self._now()
        if ttl is None:
            ttl = self.remember_ttl if remember_me else self.session_ttl
        if remember_expires_at is not None:
            ttl = remember_expires_at - now
        try:
            if generation is None:
                generation = await self._bounded(self.store.get_user_generation(user_id))
            session = Session.new(
                user_id,
                ttl,
                context,
                generation=generation,
                remember_me=remember_me,
                role=role,
                now=now,
            )
            await self._bounded(self.store.save_session(session))
            raw_token = None
            if remember_me:
                raw_token = await self._issue_remember_token(
                    session, expires_at=session.expires_at, rotation_count=rotation_count
                )
        except StoreUnavailable as exc:
            logger.error("session_create_failed", user_id=user_id, error=exc.message)
            raise ServiceUnavailableError() from None
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            remember_me=remember_me,
            generation=generation,
            expires_at=session.expires_at.isoformat(),
        )
        return SessionGrant(session=session, remember_token=raw_token)

    async def validate_session(
        self, session_id: str, context: SessionContext
    ) -> SessionValidation:
        now = self._now()
        try:
            session = await self._bounded(self.store.get_session(session_id))
            if session is None:
                return SessionValidation(False, "revoked")
            if session.revoked:
                return SessionValidation(False, "revoked", session)
            if session.is_expired(now):
                return SessionValidation(False, "expired", session)
            current = await self._bounded(self.store.get_user_generation(session.user_id))
        except StoreUnavailable as exc:
            logger.warning(
                "session_validation_unavailable", session_id=session_id, error=exc.message
            )
            return SessionValidation(False, "unavailable")

        if session.generation < current:
            logger.info(
                "session_generation_stale",
                session_id=session_id,
                user_id=session.user_id,
                session_generation=session.generation,
                current_generation=current,
            )
            return SessionValidation(False, "revoked", session)

        flagged = False
        if context.fingerprint() != session.device_fingerprint:
            strict = self.fingerprint_mode == FingerprintMode.STRICT
            logger.warning(
                "session_fingerprint_mismatch",
                session_id=session_id,
                user_id=session.user_id,
                ip=context.ip,
                action="revoked" if strict else "flagged",
            )
            if strict:
                await self._best_effort(
                    self.store.revoke_session(session_id, "fingerprint_mismatch")
                )
                return SessionValidation(False, "fingerprint_mismatch", session)
            flagged = True

        if await self._best_effort(self.store.touch_session(session_id, now)):
            session.last_activity_at = now
        return SessionValidation(True, None, session, flagged)

    async def require_session(
        self, session_id: str, context: SessionContext
    ) -> SessionValidation:
        """Validate and raise the matching error when the session is not usable."""
        result = await self.validate_session(session_id, context)
        if not result.valid:
            raise error_for_reason(result.reason)
        return result

    async def refresh_session(self, session_id: str) -> SessionGrant:
        """Extend a valid session by its own TTL class.

        The extension is a single conditional write, so a revoke landing
        between the checks and the write still wins.
        """
        now = self._now()
        try:
            session = await self._bounded(self.store.get_session(session_id))
            if session is None or session.revoked:
                raise SessionRevokedError()
            if session.is_expired(now):
                raise SessionExpiredError()
            current = await self._bounded(self.store.get_user_generation(session.user_id))
            if session.generation < current:
                raise SessionRevokedError()
            ttl = self.remember_ttl if session.remember_me else self.session_ttl
            expires_at = now + ttl
            extended = await self._bounded(
                self.store.extend_session(session_id, expires_at, now)
            )
        except StoreUnavailable:
            raise SessionUnavailableError() from None
        if not extended:
            logger.info("session_refresh_lost_to_revoke", session_id=session_id)
            raise SessionRevokedError()
        session.expires_at = expires_at
        session.last_activity_at = now
        logger.info(
            "session_refreshed",
            session_id=session_id,
            expires_at=session.expires_at.isoformat(),
        )
        return SessionGrant(session=session)

    async def destroy_session(self, session_id: str, reason: str = "logout") -> bool:
        try:
            revoked = await self._bounded(self.store.revoke_session(session_id, reason))
        except StoreUnavailable:
            raise ServiceUnavailableError() from None
        logger.info("session_destroyed", session_id=session_id, reason=reason, changed=revoked)
        return revoked

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        try:
            return await self._bounded(self.store.list_user_sessions(user_id))
        except StoreUnavailable:
            raise ServiceUnavailableError() from None

    async def destroy_all_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke every session and remember token of ``user_id``.

        The generation bump is the revocation; the sweep that follows only
        marks records for listing and audit. ``except_session_id`` and its
        remember token are re-stamped inside the bump and stay valid.
        """
        try:
            generation = await self._bounded(
                self.store.bump_user_generation(user_id, keep_session_id=except_session_id)
            )
        except StoreUnavailable:
            raise ServiceUnavailableError() from None
        revoked = await self._best_effort(
            self.store.revoke_user_sessions(
                user_id, reason="revoked_all", except_session_id=except_session_id
            )
        )
        tokens = await self._best_effort(
            self.store.revoke_user_remember_tokens(user_id, except_session_id=except_session_id)
        )
        logger.warning(
            "user_sessions_revoked",
            user_id=user_id,
            generation=generation,
            sessions=revoked,
            remember_tokens=tokens,
            kept_session_id=except_session_id,
        )
        return revoked or 0

    # ------------------------------------------------------------------
    # remember tokens
    # ------------------------------------------------------------------
    async def _issue_remember_token(
        self, session: Session, *, expires_at: datetime, rotation_count: int = 0
    ) -> str:
        raw = secrets.token_urlsafe(32)
        token = RememberToken(
            id=hash_remember_token(raw),
            user_id=session.user_id,
            session_id=session.id,
            created_at=self._now(),
            expires_at=expires_at,
            device_fingerprint=session.device_fingerprint,
            generation=session.generation,
            rotation_count=rotation_count,
        )
        await self._bounded(self.store.save_remember_token(token))
        return raw

    async def consume_remember_token(self, raw_token: str) -> RememberToken:
        """Atomically consume a presented remember token.

        Replay of an already-used value, an expired token and a token minted
        before the user's last "log out everywhere" all fail the same way.
        """
        if not raw_token:
            raise RememberTokenInvalidError()
        now = self._now()
        try:
            token = await self._bounded(
                self.store.consume_remember_token(hash_remember_token(raw_token))
            )
            if token is None:
                logger.warning("remember_token_replay_or_unknown")
                raise RememberTokenInvalidError()
            if token.is_expired(now):
                raise RememberTokenInvalidError(reason="expired")
            current = await self._bounded(self.store.get_user_generation(token.user_id))
        except StoreUnavailable:
            raise SessionUnavailableError() from None
        if token.generation < current:
            logger.warning("remember_token_stale_generation", user_id=token.user_id)
            raise RememberTokenInvalidError()
        return token

    async def rotate_remember_token(
        self, raw_token: str, context: SessionContext, *, role: Optional[str] = None
    ) -> tuple[RememberToken, SessionGrant]:
        """Consume ``raw_token`` and open a fresh remember-me session.

        The replacement token keeps the original absolute expiry, so rotation
        never stretches a remember-me chain past its first issue.
        """
        token = await self.consume_remember_token(raw_token)
        if (
            self.fingerprint_mode == FingerprintMode.STRICT
            and token.device_fingerprint != context.fingerprint()
        ):
            # Already consumed, so a stolen value is burned as well
            logger.warning(
                "remember_token_fingerprint_mismatch", user_id=token.user_id, ip=context.ip
            )
            raise RememberTokenInvalidError(reason="fingerprint_mismatch")
        previous = await self._best_effort(self.store.get_session(token.session_id))
        grant = await self.create_session(
            token.user_id,
            context,
            remember_me=True,
            role=role or (previous.role if previous else "user"),
            generation=token.generation,
            remember_expires_at=token.expires_at,
            rotation_count=token.rotation_count + 1,
        )
        # The originating session is superseded by the rotated one
        await self._best_effort(self.store.revoke_session(token.session_id, "rotated"))
        logger.info(
            "remember_token_rotated",
            user_id=token.user_id,
            session_id=grant.session_id,
            rotation_count=token.rotation_count + 1,
        )
        return token, grant

    async def revoke_remember_token(self, raw_token: str, user_id: str) -> bool:
        """Delete one remember token, but only on behalf of its owner.

        A token belonging to someone else is left untouched.
        """
        token_id = hash_remember_token(raw_token or "")
        try:
            token = await self._bounded(self.store.get_remember_token(token_id))
            if token is None:
                return False
            if token.user_id != user_id:
                logger.warning(
                    "remember_token_owner_mismatch", user_id=user_id, owner_id=token.user_id
                )
                return False
            consumed = await self._bounded(self.store.consume_remember_token(token_id))
        except StoreUnavailable:
            raise ServiceUnavailableError() from None
        return consumed is not None

    async def revoke_remember_tokens(self, user_id: str) -> int:
        try:
            return await self._bounded(self.store.revoke_user_remember_tokens(user_id))
        except StoreUnavailable:
            raise ServiceUnavailableError() from None

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------
    async def cleanup_expired(self) -> int:
        removed = await self._bounded(self.store.purge_expired(self._now()))
        if removed:
            logger.info("expired_sessions_purged", removed=removed)
        return removed

    async def get_user_stats(self, user_id: str) -> dict:
        now = self._now()
        sessions = await self.list_user_sessions(user_id)
        active = [s for s in sessions if not s.revoked and not s.is_expired(now)]
        last_activity = max((s.last_activity_at for s in active), default=None)
        return {
            "total": len(sessions),
            "active": len(active),
            "revoked": sum(1 for s in sessions if s.revoked),
            "remembered": sum(1 for s in active if s.remember_me),
            "last_activity_at": last_activity.isoformat() if last_activity else None,
        }


def error_for_reason(reason: Optional[str]) -> SessionInvalidError:
    if reason == "expired":
        return SessionExpiredError()
    if reason == "fingerprint_mismatch":
        return SessionFingerprintMismatchError()
    if reason == "unavailable":
        return SessionUnavailableError()
    return SessionRevokedError()
