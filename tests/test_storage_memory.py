"""Tests for the in-process counter and session store."""

from datetime import timedelta

import pytest

from sessionguard.storage.common import counter_key, from_millis, to_millis
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import (
    CredentialRecord,
    RememberToken,
    Session,
    SessionContext,
    hash_remember_token,
)

CONTEXT = SessionContext(ip="192.0.2.1", user_agent="Mozilla/5.0")


def _session(user_id, clock, *, ttl=timedelta(hours=1), generation=0):
    return Session.new(user_id, ttl, CONTEXT, generation=generation, now=clock.now)


def _token(session, clock, *, raw="raw-token-value"):
    return RememberToken(
        id=hash_remember_token(raw),
        user_id=session.user_id,
        session_id=session.id,
        created_at=clock.now,
        expires_at=clock.now + timedelta(days=30),
        device_fingerprint=session.device_fingerprint,
        generation=session.generation,
    )


class TestCounterKeys:
    def test_keys_are_scoped_and_normalized(self):
        assert counter_key("id", "User@Example.com ") == counter_key("id", "user@example.com")
        assert counter_key("id", "203.0.113.1") != counter_key("ip", "203.0.113.1")
        assert "user@example.com" not in counter_key("id", "user@example.com")

    def test_millis_round_trip(self, clock):
        assert from_millis(to_millis(clock.now)) == clock.now
        assert from_millis(None) is None


class TestCounters:
    async def test_sliding_window_prunes_old_hits(self, clock):
        store = MemoryStore()
        await store.record_failure("k", now=clock.now, window_seconds=60, threshold=5, lock_seconds=60)
        clock.advance(30)
        await store.record_failure("k", now=clock.now, window_seconds=60, threshold=5, lock_seconds=60)
        clock.advance(31)

        counter = await store.get_counter("k", now=clock.now, window_seconds=60)
        assert counter.count == 1
        assert counter.window_start == clock.now - timedelta(seconds=31)

    async def test_lock_set_at_threshold_and_not_extended(self, clock):
        store = MemoryStore()
        for _ in range(3):
            counter = await store.record_failure(
                "k", now=clock.now, window_seconds=600, threshold=3, lock_seconds=60
            )
        first_lock = counter.locked_until
        assert first_lock == clock.now + timedelta(seconds=60)

        clock.advance(10)
        counter = await store.record_failure(
            "k", now=clock.now, window_seconds=600, threshold=3, lock_seconds=60
        )
        assert counter.locked_until == first_lock

    async def test_clear_keeps_active_lock(self, clock):
        store = MemoryStore()
        for _ in range(2):
            await store.record_failure("k", now=clock.now, window_seconds=60, threshold=2, lock_seconds=60)
        await store.clear_attempts("k")

        counter = await store.get_counter("k", now=clock.now, window_seconds=60)
        assert counter.count == 0
        assert counter.is_locked(clock.now)

    async def test_purge_counters(self, clock):
        store = MemoryStore()
        await store.record_failure("a", now=clock.now, window_seconds=60, threshold=5, lock_seconds=60)
        await store.record_failure("b", now=clock.now, window_seconds=60, threshold=1, lock_seconds=600)
        clock.advance(61)
        assert store.purge_counters(clock.now, 60) == 1
        assert store.purge_counters(clock.now, 60) == 0
        counter = await store.get_counter("b", now=clock.now, window_seconds=60)
        assert counter.is_locked(clock.now)


class TestSessions:
    async def test_returns_copies(self, clock):
        store = MemoryStore()
        session = _session("u", clock)
        await store.save_session(session)
        loaded = await store.get_session(session.id)
        loaded.revoked = True
        assert not (await store.get_session(session.id)).revoked

    async def test_session_id_cannot_move_between_users(self, clock):
        store = MemoryStore()
        session = _session("u", clock)
        await store.save_session(session)
        session.user_id = "someone-else"
        with pytest.raises(ConstraintViolation):
            await store.save_session(session)

    async def test_touch_and_revoke(self, clock):
        store = MemoryStore()
        session = _session("u", clock)
        await store.save_session(session)
        assert await store.touch_session(session.id, clock.advance(5))
        assert await store.revoke_session(session.id, "logout")
        assert not await store.revoke_session(session.id, "logout")
        assert not await store.touch_session(session.id, clock.advance(5))
        assert not await store.touch_session("missing", clock.now)

    async def test_extend_never_revives_revoked(self, clock):
        store = MemoryStore()
        session = _session("u", clock)
        await store.save_session(session)
        later = clock.now + timedelta(hours=5)
        assert await store.extend_session(session.id, later, clock.now)
        assert (await store.get_session(session.id)).expires_at == later

        await store.revoke_session(session.id, "logout")
        assert not await store.extend_session(session.id, later + timedelta(hours=1), clock.now)
        stored = await store.get_session(session.id)
        assert stored.revoked
        assert stored.expires_at == later
        assert not await store.extend_session("missing", later, clock.now)

    async def test_bump_generation_restamps_kept_session_and_token(self, clock):
        store = MemoryStore()
        kept = _session("u", clock)
        other = _session("u", clock)
        await store.save_session(kept)
        await store.save_session(other)
        await store.save_remember_token(_token(kept, clock))

        assert await store.bump_user_generation("u", keep_session_id=kept.id) == 1
        assert (await store.get_session(kept.id)).generation == 1
        assert (await store.get_session(other.id)).generation == 0
        token = await store.consume_remember_token(hash_remember_token("raw-token-value"))
        assert token.generation == 1

    async def test_revoke_user_sessions_except(self, clock):
        store = MemoryStore()
        keep = _session("u", clock)
        await store.save_session(keep)
        for _ in range(2):
            await store.save_session(_session("u", clock))
        assert await store.revoke_user_sessions("u", reason="revoked_all", except_session_id=keep.id) == 2
        assert not (await store.get_session(keep.id)).revoked


class TestRememberTokens:
    async def test_consume_is_single_use(self, clock):
        store = MemoryStore()
        session = _session("u", clock)
        token = _token(session, clock)
        await store.save_remember_token(token)
        assert (await store.consume_remember_token(token.id)).session_id == session.id
        assert await store.consume_remember_token(token.id) is None

    async def test_duplicate_rejected(self, clock):
        store = MemoryStore()
        token = _token(_session("u", clock), clock)
        await store.save_remember_token(token)
        with pytest.raises(ConstraintViolation):
            await store.save_remember_token(token)

    async def test_revoke_user_tokens_except_session(self, clock):
        store = MemoryStore()
        keep = _session("u", clock)
        drop = _session("u", clock)
        await store.save_remember_token(_token(keep, clock, raw="keep-me"))
        await store.save_remember_token(_token(drop, clock, raw="drop-me"))
        assert await store.revoke_user_remember_tokens("u", except_session_id=keep.id) == 1
        assert await store.consume_remember_token(hash_remember_token("keep-me")) is not None

    async def test_purge_expired(self, clock):
        store = MemoryStore()
        short = _session("u", clock, ttl=timedelta(minutes=1))
        long = _session("u", clock, ttl=timedelta(days=1))
        await store.save_session(short)
        await store.save_session(long)
        clock.advance(120)
        assert await store.purge_expired(clock.now) == 1
        assert await store.get_session(short.id) is None
        assert [s.id for s in await store.list_user_sessions("u")] == [long.id]


class TestModels:
    def test_session_dict_round_trip_keeps_generation(self, clock):
        session = _session("u", clock, generation=4)
        restored = Session.from_dict(session.to_dict())
        assert restored == session

    def test_fingerprint_depends_on_ip_and_agent(self):
        assert CONTEXT.fingerprint() == SessionContext("192.0.2.1", "Mozilla/5.0").fingerprint()
        assert CONTEXT.fingerprint() != SessionContext("192.0.2.2", "Mozilla/5.0").fingerprint()

    def test_identifier_kind(self):
        assert CredentialRecord("1", "a@b.c", "h").identifier_kind == "email"
        assert CredentialRecord("1", "+8801700000000", "h").identifier_kind == "phone"
