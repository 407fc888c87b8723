from __future__ import annotations

import asyncio
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger, hash_identifier
from sessionguard.storage.common import CounterStore, counter_key
from sessionguard.storage.errors import StoreUnavailable
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import AttemptCounter

logger = get_logger(__name__)

_MALICIOUS_AGENTS = re.compile(r"bot|crawler|scanner|sqlmap|nikto|nmap", re.IGNORECASE)
_AUTOMATED_AGENTS = re.compile(r"curl|wget|python|java|node", re.IGNORECASE)


@dataclass(frozen=True)
class GuardPolicy:
    max_attempts: int = 5
    window_seconds: int = 15 * 60
    lockout_seconds: int = 30 * 60
    ip_max_attempts: int = 20
    ip_block_seconds: int = 60 * 60
    delay_enabled: bool = True
    delay_threshold: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    captcha_enabled: bool = False
    captcha_threshold: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "GuardPolicy":
        return cls(
            max_attempts=settings.max_login_attempts,
            window_seconds=settings.login_attempt_window_seconds,
            lockout_seconds=settings.account_lockout_seconds,
            ip_max_attempts=settings.ip_max_attempts,
            ip_block_seconds=settings.ip_block_seconds,
            delay_enabled=settings.login_delay_enabled,
            delay_threshold=settings.login_delay_threshold,
            base_delay_seconds=settings.login_base_delay_seconds,
            max_delay_seconds=settings.login_max_delay_seconds,
            captcha_enabled=settings.captcha_enabled,
            captcha_threshold=settings.captcha_threshold,
        )

    def delay_level(self, count: int) -> int:
        """Failures past the soft threshold; 0 while delays are off."""
        if not self.delay_enabled:
            return 0
        return max(0, count - self.delay_threshold)

    def delay_for(self, count: int) -> float:
        """Progressive delay once ``count`` passes the soft threshold, 0 below it."""
        level = self.delay_level(count)
        if level <= 0:
            return 0.0
        return min(self.base_delay_seconds * (2 ** (level - 1)), self.max_delay_seconds)


@dataclass
class GuardDecision:
    allowed: bool
    retry_after: int = 0
    requires_captcha: bool = False
    reason: Optional[str] = None


@dataclass
class RiskAssessment:
    suspicious: bool = False
    reasons: List[str] = field(default_factory=list)
    score: int = 0


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


class LoginSecurityGuard:
    """Sliding-window attempt tracking per identifier and per source IP.

    Decisions come from two independent counters. The identifier counter
    escalates from progressive delays to CAPTCHA to a hard lockout; the IP
    counter blocks a source spraying many identifiers. A success clears the
    identifier counter only.

    The guard fails open: if the shared store errors or exceeds
    ``timeout`` seconds, calls are served by an in-process fallback counter
    until a probe against the shared store succeeds again. The transition
    in each direction is logged once.
    """

    def __init__(
        self,
        store: CounterStore,
        policy: Optional[GuardPolicy] = None,
        *,
        fallback: Optional[MemoryStore] = None,
        timeout: float = 2.0,
        probe_interval: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy or GuardPolicy()
        self.fallback = fallback or MemoryStore()
        self.timeout = timeout
        self.probe_interval = probe_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state_lock = threading.Lock()
        self._degraded = False
        self._next_probe = 0.0

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _now(self) -> datetime:
        return self._clock()

    def _mark_degraded(self, operation: str, exc: BaseException) -> None:
        with self._state_lock:
            self._next_probe = time.monotonic() + self.probe_interval
            if self._degraded:
                return
            self._degraded = True
        logger.warning(
            "login_guard_degraded",
            operation=operation,
            error=str(exc) or type(exc).__name__,
            message="shared counter store unavailable; using in-process counters",
        )

    def _mark_recovered(self) -> None:
        with self._state_lock:
            if not self._degraded:
                return
            self._degraded = False
        logger.info("login_guard_recovered")

    def _skip_primary(self) -> bool:
        with self._state_lock:
            return self._degraded and time.monotonic() < self._next_probe

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        if not self._skip_primary():
            try:
                result = await asyncio.wait_for(
                    getattr(self.store, method)(*args, **kwargs), timeout=self.timeout
                )
            except (StoreUnavailable, asyncio.TimeoutError) as exc:
                self._mark_degraded(method, exc)
            else:
                self._mark_recovered()
                return result
        return await getattr(self.fallback, method)(*args, **kwargs)

    @staticmethod
    def _keys(identifier: str, ip: Optional[str]) -> tuple[str, Optional[str]]:
        return counter_key("id", identifier), (counter_key("ip", ip) if ip else None)

    async def _read(self, key: Optional[str], now: datetime) -> AttemptCounter:
        if key is None:
            return AttemptCounter(key="")
        return await self._call(
            "get_counter", key, now=now, window_seconds=self.policy.window_seconds
        )

    def _age_out(self, counter: AttemptCounter, now: datetime) -> int:
        start = counter.window_start or now
        return _seconds_until(start + timedelta(seconds=self.policy.window_seconds), now)

    def _evaluate_identifier(self, counter: AttemptCounter, now: datetime) -> GuardDecision:
        policy = self.policy
        if counter.is_locked(now):
            return GuardDecision(False, _seconds_until(counter.locked_until, now), reason="locked")
        if counter.count >= policy.max_attempts:
            return GuardDecision(False, self._age_out(counter, now), reason="locked")
        delay = policy.delay_for(counter.count)
        if delay and counter.last_attempt_at is not None:
            ready_at = counter.last_attempt_at + timedelta(seconds=delay)
            if ready_at > now:
                return GuardDecision(False, _seconds_until(ready_at, now), reason="delay")
        return GuardDecision(True)

    def _evaluate_ip(self, counter: AttemptCounter, now: datetime) -> GuardDecision:
        if counter.is_locked(now):
            return GuardDecision(
                False, _seconds_until(counter.locked_until, now), reason="ip_blocked"
            )
        if counter.count >= self.policy.ip_max_attempts:
            return GuardDecision(False, self._age_out(counter, now), reason="ip_blocked")
        return GuardDecision(True)

    def _requires_captcha(self, counter: AttemptCounter) -> bool:
        return self.policy.captcha_enabled and counter.count >= self.policy.captcha_threshold

    async def check_allowed(self, identifier: str, ip: Optional[str]) -> GuardDecision:
        now = self._now()
        id_key, ip_key = self._keys(identifier, ip)
        id_counter = await self._read(id_key, now)
        id_counter.delay_level = self.policy.delay_level(id_counter.count)
        ip_counter = await self._read(ip_key, now)
        requires_captcha = self._requires_captcha(id_counter)

        denied = [
            decision
            for decision in (
                self._evaluate_identifier(id_counter, now),
                self._evaluate_ip(ip_counter, now),
            )
            if not decision.allowed
        ]
        if not denied:
            return GuardDecision(True, requires_captcha=requires_captcha)
        strictest = max(denied, key=lambda d: d.retry_after)
        logger.info(
            "login_attempt_denied",
            identifier_hash=hash_identifier(identifier),
            ip=ip,
            reason=strictest.reason,
            retry_after=strictest.retry_after,
        )
        return GuardDecision(
            False,
            strictest.retry_after,
            requires_captcha=requires_captcha,
            reason=strictest.reason,
        )

    async def record_failure(self, identifier: str, ip: Optional[str]) -> None:
        now = self._now()
        policy = self.policy
        id_key, ip_key = self._keys(identifier, ip)
        counter = await self._call(
            "record_failure",
            id_key,
            now=now,
            window_seconds=policy.window_seconds,
            threshold=policy.max_attempts,
            lock_seconds=policy.lockout_seconds,
        )
        counter.delay_level = policy.delay_level(counter.count)
        if ip_key is not None:
            ip_counter = await self._call(
                "record_failure",
                ip_key,
                now=now,
                window_seconds=policy.window_seconds,
                threshold=policy.ip_max_attempts,
                lock_seconds=policy.ip_block_seconds,
            )
            if ip_counter.count == policy.ip_max_attempts:
                logger.warning("login_ip_blocked", ip=ip, attempts=ip_counter.count)
        logger.info(
            "login_failure_recorded",
            identifier_hash=hash_identifier(identifier),
            ip=ip,
            attempts=counter.count,
            delay_level=counter.delay_level,
        )
        if counter.count == policy.max_attempts:
            logger.warning(
                "login_identifier_locked",
                identifier_hash=hash_identifier(identifier),
                locked_until=counter.locked_until.isoformat() if counter.locked_until else None,
            )

    async def record_success(self, identifier: str, ip: Optional[str]) -> None:
        id_key, _ = self._keys(identifier, ip)
        await self._call("clear_attempts", id_key)

    async def get_stats(self, identifier: str, ip: Optional[str] = None) -> dict:
        now = self._now()
        id_key, ip_key = self._keys(identifier, ip)
        id_counter = await self._read(id_key, now)
        id_counter.delay_level = self.policy.delay_level(id_counter.count)
        ip_counter = await self._read(ip_key, now)
        return {
            "identifier_attempts": id_counter.count,
            "identifier_locked_until": id_counter.locked_until.isoformat()
            if id_counter.is_locked(now)
            else None,
            "ip_attempts": ip_counter.count,
            "ip_blocked_until": ip_counter.locked_until.isoformat()
            if ip_counter.is_locked(now)
            else None,
            "delay_level": id_counter.delay_level,
            "delay_seconds": self.policy.delay_for(id_counter.count),
            "requires_captcha": self._requires_captcha(id_counter),
            "degraded": self._degraded,
        }

    async def assess_risk(
        self, identifier: str, ip: Optional[str], user_agent: Optional[str]
    ) -> RiskAssessment:
        """Advisory scoring of a login attempt; never blocks on its own."""
        assessment = RiskAssessment()
        _, ip_key = self._keys(identifier, ip)
        ip_counter = await self._read(ip_key, self._now())
        if ip_counter.count > 10:
            assessment.reasons.append("high_attempt_volume")
            assessment.score += 3
        if ip_counter.count > 5:
            assessment.reasons.append("rapid_attempts")
            assessment.score += 2
        agent = user_agent or ""
        if _MALICIOUS_AGENTS.search(agent):
            assessment.reasons.append("malicious_user_agent")
            assessment.score += 5
        if _AUTOMATED_AGENTS.search(agent) and assessment.score > 0:
            assessment.reasons.append("automated_tool")
            assessment.score += 2
        assessment.suspicious = assessment.score > 0
        if assessment.suspicious:
            logger.warning(
                "suspicious_login_pattern",
                identifier_hash=hash_identifier(identifier),
                ip=ip,
                user_agent=user_agent,
                reasons=assessment.reasons,
                risk_score=assessment.score,
            )
        return assessment

    def cleanup(self) -> int:
        """Reclaim idle fallback counters."""
        return self.fallback.purge_counters(self._now(), self.policy.window_seconds)
