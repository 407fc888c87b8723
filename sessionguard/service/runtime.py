from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, StoreStrategy
from sessionguard.logging import get_logger
from sessionguard.service.captcha import CaptchaVerifier, HttpCaptchaVerifier
from sessionguard.service.gateway import AuthGateway
from sessionguard.service.login_guard import GuardPolicy, LoginSecurityGuard
from sessionguard.service.sessions import SessionManager
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.credentials import (
    CredentialStore,
    MemoryCredentialStore,
    PostgresCredentialStore,
)
from sessionguard.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> Any:
    """Instantiate the counter/session store named by ``settings.store_strategy``."""
    strategy = StoreStrategy(settings.store_strategy)
    if strategy == StoreStrategy.REDIS:
        from sessionguard.storage.redis_store import RedisStore

        logger.info("store_selected", strategy=strategy.value, url=_mask_url_password(settings.redis_url))
        return RedisStore(settings.redis_url, socket_timeout=settings.store_timeout_seconds)
    if strategy == StoreStrategy.POSTGRES:
        from sessionguard.storage.postgres import PostgresStore

        logger.info("store_selected", strategy=strategy.value, url=_mask_url_password(settings.database_url))
        return PostgresStore(settings.database_url, timeout=settings.store_timeout_seconds)
    logger.info("store_selected", strategy=strategy.value)
    return MemoryStore()


@dataclass
class Runtime:
    """Composition root for one application instance.

    Owns the stores and services built from :class:`Settings`. The FastAPI
    app keeps one on ``app.state.runtime`` and closes it on shutdown; tests
    build their own with in-memory stores.
    """

    settings: Settings
    store: Any
    credentials: CredentialStore
    guard: LoginSecurityGuard
    sessions: SessionManager
    codec: TokenCodec
    gateway: AuthGateway
    _closeables: list = field(default_factory=list)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        store: Any = None,
        credentials: Optional[CredentialStore] = None,
        captcha: Optional[CaptchaVerifier] = None,
        clock=None,
    ) -> "Runtime":
        logger.info(
            "runtime_init_started",
            store_strategy=StoreStrategy(settings.store_strategy).value,
            test_mode=settings.test_mode,
        )
        closeables: list = []
        if store is None:
            store = build_store(settings)
            closeables.append(store)
        if credentials is None:
            if StoreStrategy(settings.store_strategy) == StoreStrategy.MEMORY:
                credentials = MemoryCredentialStore()
            else:
                credentials = PostgresCredentialStore.from_dsn(settings.database_url)
                closeables.append(credentials)
        if captcha is None and settings.captcha_enabled and settings.captcha_verify_url:
            captcha = HttpCaptchaVerifier(settings.captcha_verify_url, settings.captcha_secret or "")
        if settings.captcha_enabled and captcha is None:
            logger.warning("captcha_verifier_missing", message="CAPTCHA-gated logins will be refused")

        guard = LoginSecurityGuard(
            store,
            GuardPolicy.from_settings(settings),
            timeout=settings.store_timeout_seconds,
            clock=clock,
        )
        sessions = SessionManager.from_settings(store, settings, clock=clock)
        codec = TokenCodec(
            settings.jwt_secret,
            settings.jwt_issuer,
            settings.jwt_audience,
            clock=clock,
        )
        gateway = AuthGateway(
            credentials,
            guard,
            sessions,
            codec,
            token_ttl=timedelta(minutes=settings.token_ttl_minutes),
            verification_policy=settings.verification_policy,
            captcha=captcha,
            clock=clock,
        )
        return cls(
            settings=settings,
            store=store,
            credentials=credentials,
            guard=guard,
            sessions=sessions,
            codec=codec,
            gateway=gateway,
            _closeables=closeables,
        )

    async def cleanup(self) -> dict:
        """Optional housekeeping; nothing depends on it for correctness."""
        return {
            "sessions_purged": await self.sessions.cleanup_expired(),
            "fallback_counters_purged": self.guard.cleanup(),
        }

    async def close(self) -> None:
        for resource in self._closeables:
            try:
                result = resource.close()
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                logger.warning("runtime_close_failed", resource=type(resource).__name__, error=str(exc))
        self._closeables.clear()
        logger.info("runtime_closed")
