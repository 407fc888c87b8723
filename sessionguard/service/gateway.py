from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sessionguard.config import VerificationPolicy
from sessionguard.logging import get_logger, hash_identifier
from sessionguard.service.captcha import CaptchaVerifier
from sessionguard.service.errors import (
    CaptchaRequiredError,
    InvalidCredentialsError,
    RateLimitedError,
    SessionRevokedError,
    TokenMalformedError,
    VerificationRequiredError,
)
from sessionguard.service.login_guard import LoginSecurityGuard
from sessionguard.service.sessions import SessionManager, error_for_reason
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.credentials import CredentialStore
from sessionguard.storage.models import CredentialRecord, Session, SessionContext

logger = get_logger(__name__)

_BLOCKED_STATUSES = {"disabled", "suspended", "banned", "deleted"}


@dataclass
class Principal:
    user_id: str
    role: str
    session_id: str
    flagged: bool = False


@dataclass
class LoginResult:
    user_id: str
    role: str
    token: str
    token_expires_at: datetime
    session_id: str
    expires_at: datetime
    remember_token: Optional[str] = None
    token_type: str = "Bearer"


def requires_verification(policy: VerificationPolicy, record: CredentialRecord) -> bool:
    """True when ``record`` may not log in until its identifier is verified."""
    if policy == VerificationPolicy.SKIP_ALL:
        return False
    if record.identifier_kind == "email":
        return policy == VerificationPolicy.ENFORCE_ALL and not record.email_verified
    return not record.phone_verified


class AuthGateway:
    """Login, per-request authentication, remember-me refresh and logout."""

    def __init__(
        self,
        credentials: CredentialStore,
        guard: LoginSecurityGuard,
        sessions: SessionManager,
        codec: TokenCodec,
        *,
        token_ttl: timedelta = timedelta(minutes=15),
        verification_policy: VerificationPolicy = VerificationPolicy.ENFORCE_ALL,
        captcha: Optional[CaptchaVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.guard = guard
        self.sessions = sessions
        self.codec = codec
        self.token_ttl = token_ttl
        self.verification_policy = VerificationPolicy(verification_policy)
        self.captcha = captcha
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def _issue(self, session: Session) -> tuple[str, datetime]:
        # Never shorter than the session it accompanies
        remaining = session.expires_at - self._clock()
        ttl = max(self.token_ttl, remaining)
        token = self.codec.issue(
            {"sub": session.user_id, "sid": session.id, "role": session.role}, ttl
        )
        return token, self._clock() + ttl

    def _result(self, session: Session, remember_token: Optional[str]) -> LoginResult:
        token, token_expires_at = self._issue(session)
        return LoginResult(
            user_id=session.user_id,
            role=session.role,
            token=token,
            token_expires_at=token_expires_at,
            session_id=session.id,
            expires_at=session.expires_at,
            remember_token=remember_token,
        )

    async def _captcha_passed(self, captcha_token: Optional[str], ip: Optional[str]) -> bool:
        if self.captcha is None or not captcha_token:
            return False
        return await self.captcha.verify(captcha_token, ip)

    async def login(
        self,
        identifier: str,
        password: str,
        context: SessionContext,
        *,
        remember_me: bool = False,
        captcha_token: Optional[str] = None,
    ) -> LoginResult:
        identifier = (identifier or "").strip()
        ip = context.ip
        decision = await self.guard.check_allowed(identifier, ip)
        if not decision.allowed:
            raise RateLimitedError(
                retry_after=decision.retry_after,
                detail={"requires_captcha": decision.requires_captcha},
                reason=decision.reason,
            )
        if decision.requires_captcha and not await self._captcha_passed(captcha_token, ip):
            raise CaptchaRequiredError(retry_after=1, detail={"requires_captcha": True})
        await self.guard.assess_risk(identifier, ip, context.user_agent)

        record = await self.credentials.find_by_identifier(identifier)
        password_ok = await asyncio.to_thread(
            self.credentials.verify_password,
            password or "",
            record.password_hash if record else None,
        )
        if record is None or not password_ok or record.status in _BLOCKED_STATUSES:
            await self.guard.record_failure(identifier, ip)
            logger.info(
                "login_failed",
                identifier_hash=hash_identifier(identifier),
                ip=ip,
                known=record is not None,
            )
            raise InvalidCredentialsError()

        if requires_verification(self.verification_policy, record):
            logger.info(
                "login_verification_required",
                user_id=record.user_id,
                kind=record.identifier_kind,
            )
            raise VerificationRequiredError(detail={"verification_type": record.identifier_kind})

        await self.guard.record_success(identifier, ip)
        grant = await self.sessions.create_session(
            record.user_id, context, remember_me=remember_me, role=record.role
        )
        logger.info(
            "login_succeeded",
            user_id=record.user_id,
            session_id=grant.session_id,
            remember_me=remember_me,
        )
        return self._result(grant.session, grant.remember_token)

    async def authenticate(
        self, token: Optional[str], context: SessionContext
    ) -> Principal:
        if not token:
            raise TokenMalformedError()
        claims = self.codec.verify(token)
        result = await self.sessions.validate_session(claims.session_id, context)
        if not result.valid:
            raise error_for_reason(result.reason)
        session = result.session
        if session.user_id != claims.user_id:
            logger.warning(
                "token_session_user_mismatch",
                session_id=session.id,
                token_user_id=claims.user_id,
            )
            raise SessionRevokedError()
        return Principal(
            user_id=session.user_id,
            role=session.role,
            session_id=session.id,
            flagged=result.flagged,
        )

    async def refresh_from_remember_token(
        self, remember_token: str, context: SessionContext
    ) -> LoginResult:
        _, grant = await self.sessions.rotate_remember_token(remember_token, context)
        return self._result(grant.session, grant.remember_token)

    async def extend_session(self, principal: Principal) -> LoginResult:
        """Push the caller's session expiry out and issue a matching token."""
        grant = await self.sessions.refresh_session(principal.session_id)
        return self._result(grant.session, None)

    async def revoke_remember(
        self, principal: Principal, remember_token: Optional[str] = None
    ) -> int:
        """Disable "remember me": one presented token, or all of the user's."""
        if remember_token:
            return int(
                await self.sessions.revoke_remember_token(remember_token, principal.user_id)
            )
        return await self.sessions.revoke_remember_tokens(principal.user_id)

    async def logout(
        self,
        principal: Principal,
        *,
        everywhere: bool = False,
        remember_token: Optional[str] = None,
    ) -> int:
        """End the caller's session, or every session of the user.

        A remember token presented with a single-session logout is deleted
        so it cannot bring the session back, provided it belongs to the
        caller.
        """
        if everywhere:
            return await self.sessions.destroy_all_for_user(principal.user_id)
        revoked = await self.sessions.destroy_session(principal.session_id, "logout")
        if remember_token and not await self.sessions.revoke_remember_token(
            remember_token, principal.user_id
        ):
            logger.info("logout_remember_token_ignored", user_id=principal.user_id)
        return int(revoked)
