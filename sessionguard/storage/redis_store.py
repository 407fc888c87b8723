from __future__ import annotations

import functools
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sessionguard.logging import get_logger
from sessionguard.storage.common import from_millis, to_millis
from sessionguard.storage.errors import StoreUnavailable
from sessionguard.storage.models import AttemptCounter, RememberToken, Session

logger = get_logger(__name__)

T = TypeVar("T")


def _translate_errors(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Surface any redis-py failure as :class:`StoreUnavailable`."""

    @functools.wraps(fn)
    async def wrapper(self: "RedisStore", *args: Any, **kwargs: Any) -> T:
        try:
            return await fn(self, *args, **kwargs)
        except RedisError as exc:
            logger.warning("redis_operation_failed", operation=fn.__name__, error=str(exc))
            raise StoreUnavailable("redis unavailable", {"operation": fn.__name__}) from exc

    return wrapper


class RedisStore:
    """Redis-backed counters, sessions and remember tokens.

    Attempt windows are sorted sets scored by epoch milliseconds. Sessions and
    remember tokens are JSON strings expiring with the record; per-user
    indexes let "log out everywhere" find every record for a user.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    KEY_PREFIX = "sg"

    # Prune the window, add this failure, and lock at the threshold in one step.
    _RECORD_FAILURE_SCRIPT = """
local attempts_key = KEYS[1]
local lock_key = KEYS[2]
local now = tonumber(ARGV[1])
local cutoff = tonumber(ARGV[2])
local window_ms = tonumber(ARGV[3])
local threshold = tonumber(ARGV[4])
local lock_ms = tonumber(ARGV[5])
local lock_until = ARGV[6]
local member = ARGV[7]

redis.call('ZREMRANGEBYSCORE', attempts_key, '-inf', cutoff)
redis.call('ZADD', attempts_key, now, member)
redis.call('PEXPIRE', attempts_key, window_ms)
local count = redis.call('ZCARD', attempts_key)
local oldest = redis.call('ZRANGE', attempts_key, 0, 0, 'WITHSCORES')

local locked = redis.call('GET', lock_key)
if not locked and count >= threshold then
  redis.call('SET', lock_key, lock_until, 'PX', lock_ms)
  locked = lock_until
end
return {count, oldest[2] or false, locked or false}
"""

    _TOUCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local s = cjson.decode(raw)
if s['revoked'] then
  return 0
end
s['last_activity_at'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(s), 'KEEPTTL')
return 1
"""

    # KEYS: session, user session index
    # ARGV: expires_at, last_activity_at, ttl ms, expires_at ms, session id
    _EXTEND_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local s = cjson.decode(raw)
if s['revoked'] then
  return 0
end
s['expires_at'] = ARGV[1]
s['last_activity_at'] = ARGV[2]
redis.call('SET', KEYS[1], cjson.encode(s), 'PX', ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[4], ARGV[5])
redis.call('PEXPIRE', KEYS[2], ARGV[3], 'GT')
return 1
"""

    _REVOKE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local s = cjson.decode(raw)
if s['revoked'] then
  return 0
end
s['revoked'] = true
s['revoked_reason'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(s), 'KEEPTTL')
return 1
"""

    # KEYS: generation, kept session, user remember index
    # ARGV: user id, remember key prefix, kept session id
    _BUMP_GENERATION_SCRIPT = """
local gen = redis.call('INCR', KEYS[1])
if ARGV[3] == '' then
  return gen
end
local raw = redis.call('GET', KEYS[2])
if raw then
  local s = cjson.decode(raw)
  if s['user_id'] == ARGV[1] and not s['revoked'] then
    s['generation'] = gen
    redis.call('SET', KEYS[2], cjson.encode(s), 'KEEPTTL')
  end
end
local members = redis.call('SMEMBERS', KEYS[3])
for _, token_id in ipairs(members) do
  local token_key = ARGV[2] .. token_id
  local traw = redis.call('GET', token_key)
  if traw then
    local t = cjson.decode(traw)
    if t['session_id'] == ARGV[3] then
      t['generation'] = gen
      redis.call('SET', token_key, cjson.encode(t), 'KEEPTTL')
    end
  end
end
return gen
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)
        self._touch = self.client.register_script(self._TOUCH_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._bump_generation = self.client.register_script(self._BUMP_GENERATION_SCRIPT)
        self._extend = self.client.register_script(self._EXTEND_SCRIPT)

    # key helpers -----------------------------------------------------
    def _attempts_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:attempts:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}:lock:{key}"

    def _session_key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}:session:{session_id}"

    def _user_sessions_key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:user_sessions:{user_id}"

    def _generation_key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:user_gen:{user_id}"

    @property
    def _remember_prefix(self) -> str:
        return f"{self.KEY_PREFIX}:remember:"

    def _remember_key(self, token_id: str) -> str:
        return f"{self._remember_prefix}{token_id}"

    def _user_remember_key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:user_remember:{user_id}"

    @staticmethod
    def _ttl_millis(expires_at: datetime) -> int:
        """Remaining lifetime in ms, clamped so Redis never sees zero or negative TTLs."""
        now = datetime.now(timezone.utc)
        return max(1000, to_millis(expires_at) - to_millis(now))

    # attempt counters ------------------------------------------------
    @_translate_errors
    async def record_failure(
        self,
        key: str,
        *,
        now: datetime,
        window_seconds: int,
        threshold: int,
        lock_seconds: int,
    ) -> AttemptCounter:
        now_ms = to_millis(now)
        window_ms = window_seconds * 1000
        lock_ms = lock_seconds * 1000
        member = f"{now_ms}:{secrets.token_hex(6)}"
        count, oldest, locked = await self._record_failure(
            keys=[self._attempts_key(key), self._lock_key(key)],
            args=[
                now_ms,
                now_ms - window_ms,
                window_ms,
                threshold,
                lock_ms,
                now_ms + lock_ms,
                member,
            ],
        )
        return AttemptCounter(
            key=key,
            count=int(count),
            window_start=from_millis(oldest) if oldest else None,
            last_attempt_at=now,
            locked_until=from_millis(locked) if locked else None,
        )

    @_translate_errors
    async def get_counter(
        self, key: str, *, now: datetime, window_seconds: int
    ) -> AttemptCounter:
        now_ms = to_millis(now)
        cutoff = now_ms - window_seconds * 1000
        attempts_key = self._attempts_key(key)
        pipe = self.client.pipeline(transaction=True)
        pipe.zcount(attempts_key, f"({cutoff}", "+inf")
        pipe.zrangebyscore(attempts_key, f"({cutoff}", "+inf", start=0, num=1, withscores=True)
        pipe.zrevrangebyscore(attempts_key, "+inf", f"({cutoff}", start=0, num=1, withscores=True)
        pipe.get(self._lock_key(key))
        count, oldest, newest, locked = await pipe.execute()
        locked_until = from_millis(locked) if locked else None
        if locked_until is not None and locked_until <= now:
            locked_until = None
        return AttemptCounter(
            key=key,
            count=int(count),
            window_start=from_millis(oldest[0][1]) if oldest else None,
            last_attempt_at=from_millis(newest[0][1]) if newest else None,
            locked_until=locked_until,
        )

    @_translate_errors
    async def clear_attempts(self, key: str) -> None:
        await self.client.delete(self._attempts_key(key))

    # sessions --------------------------------------------------------
    @_translate_errors
    async def save_session(self, session: Session) -> None:
        ttl_ms = self._ttl_millis(session.expires_at)
        index_key = self._user_sessions_key(session.user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(self._session_key(session.id), json.dumps(session.to_dict()), px=ttl_ms)
        pipe.zadd(index_key, {session.id: to_millis(session.expires_at)})
        # The index outlives its longest member
        pipe.pexpire(index_key, ttl_ms, gt=True)
        pipe.pexpire(index_key, ttl_ms, nx=True)
        await pipe.execute()

    @_translate_errors
    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(self._session_key(session_id))
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            logger.warning("redis_session_corrupt", session_id=session_id, error=str(exc))
            return None

    @_translate_errors
    async def touch_session(self, session_id: str, at: datetime) -> bool:
        result = await self._touch(keys=[self._session_key(session_id)], args=[at.isoformat()])
        return bool(result)

    @_translate_errors
    async def extend_session(self, session_id: str, expires_at: datetime, at: datetime) -> bool:
        session = await self.get_session(session_id)
        if session is None:
            return False
        # The script re-checks the record, so a revoke in between still wins
        result = await self._extend(
            keys=[self._session_key(session_id), self._user_sessions_key(session.user_id)],
            args=[
                expires_at.isoformat(),
                at.isoformat(),
                self._ttl_millis(expires_at),
                to_millis(expires_at),
                session_id,
            ],
        )
        return bool(result)

    @_translate_errors
    async def revoke_session(self, session_id: str, reason: str) -> bool:
        result = await self._revoke(keys=[self._session_key(session_id)], args=[reason])
        return bool(result)

    @_translate_errors
    async def list_user_sessions(self, user_id: str) -> List[Session]:
        index_key = self._user_sessions_key(user_id)
        now_ms = to_millis(datetime.now(timezone.utc))
        # Expired members have already lost their record
        await self.client.zremrangebyscore(index_key, "-inf", now_ms)
        session_ids = await self.client.zrange(index_key, 0, -1)
        if not session_ids:
            return []
        raws = await self.client.mget([self._session_key(sid) for sid in session_ids])
        sessions: List[Session] = []
        for raw in raws:
            if raw is None:
                continue
            sessions.append(Session.from_dict(json.loads(raw)))
        return sorted(sessions, key=lambda s: s.created_at)

    @_translate_errors
    async def get_user_generation(self, user_id: str) -> int:
        value = await self.client.get(self._generation_key(user_id))
        return int(value) if value else 0

    @_translate_errors
    async def bump_user_generation(
        self, user_id: str, keep_session_id: Optional[str] = None
    ) -> int:
        keep = keep_session_id or ""
        result = await self._bump_generation(
            keys=[
                self._generation_key(user_id),
                self._session_key(keep),
                self._user_remember_key(user_id),
            ],
            args=[user_id, self._remember_prefix, keep],
        )
        return int(result)

    @_translate_errors
    async def revoke_user_sessions(
        self, user_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> int:
        session_ids = await self.client.zrange(self._user_sessions_key(user_id), 0, -1)
        revoked = 0
        for session_id in session_ids:
            if session_id == except_session_id:
                continue
            if await self._revoke(keys=[self._session_key(session_id)], args=[reason]):
                revoked += 1
        return revoked

    # remember tokens -------------------------------------------------
    @_translate_errors
    async def save_remember_token(self, token: RememberToken) -> None:
        ttl_ms = self._ttl_millis(token.expires_at)
        index_key = self._user_remember_key(token.user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(self._remember_key(token.id), json.dumps(token.to_dict()), px=ttl_ms, nx=True)
        pipe.sadd(index_key, token.id)
        pipe.pexpire(index_key, ttl_ms, gt=True)
        pipe.pexpire(index_key, ttl_ms, nx=True)
        await pipe.execute()

    @_translate_errors
    async def get_remember_token(self, token_id: str) -> Optional[RememberToken]:
        raw = await self.client.get(self._remember_key(token_id))
        return RememberToken.from_dict(json.loads(raw)) if raw is not None else None

    @_translate_errors
    async def consume_remember_token(self, token_id: str) -> Optional[RememberToken]:
        raw = await self.client.getdel(self._remember_key(token_id))
        if raw is None:
            return None
        token = RememberToken.from_dict(json.loads(raw))
        await self.client.srem(self._user_remember_key(token.user_id), token_id)
        return token

    @_translate_errors
    async def revoke_user_remember_tokens(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        index_key = self._user_remember_key(user_id)
        token_ids = await self.client.smembers(index_key)
        revoked = 0
        for token_id in token_ids:
            key = self._remember_key(token_id)
            if except_session_id is not None:
                raw = await self.client.get(key)
                if raw is not None and json.loads(raw).get("session_id") == except_session_id:
                    continue
            revoked += int(await self.client.delete(key))
            await self.client.srem(index_key, token_id)
        return revoked

    async def purge_expired(self, now: datetime) -> int:
        # Records expire through their own TTLs
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close the connection pool. Call on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
