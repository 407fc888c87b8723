"""Unit tests for RedisStore with the redis client stubbed out."""

import json
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessionguard.storage.common import to_millis
from sessionguard.storage.errors import StoreUnavailable
from sessionguard.storage.models import RememberToken, Session, SessionContext
from sessionguard.storage.redis_store import RedisStore


class FakeScript:
    def __init__(self):
        self.result = None
        self.error = None
        self.calls = []

    async def __call__(self, keys=None, args=None):
        self.calls.append((keys, args))
        if self.error is not None:
            raise self.error
        return self.result


class FakeRedis:
    def __init__(self):
        self.scripts = []
        self.values = {}
        self.removed = []
        self.error = None

    def register_script(self, script):
        fake = FakeScript()
        self.scripts.append(fake)
        return fake

    async def get(self, key):
        if self.error is not None:
            raise self.error
        return self.values.get(key)

    async def getdel(self, key):
        return self.values.pop(key, None)

    async def srem(self, key, member):
        self.removed.append((key, member))
        return 1

    async def ping(self):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def client():
    return FakeRedis()


@pytest.fixture
def store(client):
    return RedisStore("redis://localhost:6379/0", client=client)


def test_key_layout(store):
    assert store._attempts_key("id:abc") == "sg:attempts:id:abc"
    assert store._lock_key("id:abc") == "sg:lock:id:abc"
    assert store._session_key("s1") == "sg:session:s1"
    assert store._generation_key("u1") == "sg:user_gen:u1"
    assert store._remember_key("t1") == "sg:remember:t1"


def test_scripts_registered(client, store):
    assert len(client.scripts) == 5


async def test_record_failure_parses_script_reply(client, store, clock):
    record_script = client.scripts[0]
    oldest = clock.now - timedelta(seconds=20)
    record_script.result = [3, str(to_millis(oldest)), False]

    counter = await store.record_failure(
        "id:abc", now=clock.now, window_seconds=60, threshold=5, lock_seconds=300
    )

    assert counter.count == 3
    assert counter.window_start == oldest
    assert counter.last_attempt_at == clock.now
    assert counter.locked_until is None
    keys, args = record_script.calls[0]
    assert keys == ["sg:attempts:id:abc", "sg:lock:id:abc"]
    assert args[0] == to_millis(clock.now)
    assert args[1] == to_millis(clock.now) - 60_000
    assert args[5] == to_millis(clock.now) + 300_000


async def test_record_failure_reports_lock(client, store, clock):
    locked_until = clock.now + timedelta(minutes=5)
    client.scripts[0].result = [5, str(to_millis(clock.now)), str(to_millis(locked_until))]

    counter = await store.record_failure(
        "id:abc", now=clock.now, window_seconds=60, threshold=5, lock_seconds=300
    )
    assert counter.locked_until == locked_until


async def test_redis_errors_become_store_unavailable(client, store, clock):
    client.scripts[0].error = RedisConnectionError("connection refused")
    with pytest.raises(StoreUnavailable):
        await store.record_failure(
            "id:abc", now=clock.now, window_seconds=60, threshold=5, lock_seconds=300
        )

    client.error = RedisConnectionError("connection refused")
    with pytest.raises(StoreUnavailable):
        await store.get_session("s1")


async def test_corrupt_session_reads_as_missing(client, store):
    client.values["sg:session:s1"] = "{not json"
    assert await store.get_session("s1") is None


async def test_consume_remember_token(client, store, clock):
    token = RememberToken(
        id="t1",
        user_id="u1",
        session_id="s1",
        created_at=clock.now,
        expires_at=clock.now + timedelta(days=30),
        device_fingerprint="fp",
        generation=2,
    )
    client.values["sg:remember:t1"] = json.dumps(token.to_dict())

    consumed = await store.consume_remember_token("t1")
    assert consumed == token
    assert client.removed == [("sg:user_remember:u1", "t1")]
    assert await store.consume_remember_token("t1") is None


async def test_bump_generation_passes_kept_session(client, store):
    bump_script = client.scripts[3]
    bump_script.result = 7
    assert await store.bump_user_generation("u1", keep_session_id="s9") == 7
    keys, args = bump_script.calls[0]
    assert keys == ["sg:user_gen:u1", "sg:session:s9", "sg:user_remember:u1"]
    assert args == ["u1", "sg:remember:", "s9"]


async def test_touch_and_revoke_use_scripts(client, store, clock):
    client.scripts[1].result = 1
    client.scripts[2].result = 0
    assert await store.touch_session("s1", clock.now)
    assert not await store.revoke_session("s1", "logout")
    assert client.scripts[2].calls[0] == (["sg:session:s1"], ["logout"])


async def test_ping_failure_is_false(store):
    assert await store.ping() is False


async def test_purge_is_noop(store, clock):
    assert await store.purge_expired(clock.now) == 0


async def test_extend_session_runs_revocation_aware_script(client, store, clock):
    session = Session.new(
        "u1", timedelta(hours=1), SessionContext(ip="192.0.2.1"), generation=0, now=clock.now
    )
    client.values["sg:session:" + session.id] = json.dumps(session.to_dict())
    extend_script = client.scripts[4]
    extend_script.result = 0
    expires_at = clock.now + timedelta(hours=2)

    assert not await store.extend_session(session.id, expires_at, clock.now)
    keys, args = extend_script.calls[0]
    assert keys == ["sg:session:" + session.id, "sg:user_sessions:u1"]
    assert args[0] == expires_at.isoformat()
    assert args[3] == to_millis(expires_at)
    assert args[4] == session.id


async def test_extend_missing_session_skips_script(client, store, clock):
    assert not await store.extend_session("gone", clock.now, clock.now)
    assert client.scripts[4].calls == []


async def test_get_remember_token_does_not_consume(client, store, clock):
    token = RememberToken(
        id="t1",
        user_id="u1",
        session_id="s1",
        created_at=clock.now,
        expires_at=clock.now + timedelta(days=30),
        device_fingerprint="fp",
    )
    client.values["sg:remember:t1"] = json.dumps(token.to_dict())

    assert await store.get_remember_token("t1") == token
    assert "sg:remember:t1" in client.values
    assert await store.get_remember_token("t2") is None
