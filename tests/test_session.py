import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bulwark.logging_config import ContextLogger
from bulwark.server.errors import SessionStoreError
from bulwark.server.session import (
    CONNECT_TIMEOUT_SECONDS,
    SESSION_TTL,
    SWEEP_INTERVAL,
    RedisSessionStore,
    Session,
    SessionCookieSigner,
    SessionManager,
    parse_sentinel_url,
)

from conftest import TEST_SECRET, records_for


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now += delta


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(fake_redis, clock):
    return RedisSessionStore(
        "redis://localhost:6379/0", "sessions", client=fake_redis, clock=clock
    )


@pytest.fixture
def log(test_logger):
    return ContextLogger(test_logger, {"context": "HTTP-TEST"})


def test_session_tracks_changes():
    session = Session("abc", {"user": "ada"})

    assert not session.new
    assert not session.modified
    assert session["user"] == "ada"

    session["visits"] = 1
    assert session.modified
    assert dict(session) == {"user": "ada", "visits": 1}


def test_session_invalidate_clears_data():
    session = Session("abc", {"user": "ada"})
    session.invalidate()

    assert session.invalidated
    assert len(session) == 0


def test_cookie_signer_round_trip():
    signer = SessionCookieSigner(TEST_SECRET)
    cookie = signer.sign("session-id")

    assert cookie.startswith("session-id.")
    assert signer.unsign(cookie) == "session-id"


@pytest.mark.parametrize("value", ["session-id", "session-id.bogus", ".sig", ""])
def test_cookie_signer_rejects_bad_values(value):
    assert SessionCookieSigner(TEST_SECRET).unsign(value) is None


def test_cookie_signer_rejects_other_secret():
    cookie = SessionCookieSigner("another secret").sign("session-id")

    assert SessionCookieSigner(TEST_SECRET).unsign(cookie) is None


def test_cookie_signer_requires_secret():
    with pytest.raises(ValueError):
        SessionCookieSigner("")


def test_ttl_and_sweep_interval():
    assert SESSION_TTL == timedelta(minutes=30)
    assert SWEEP_INTERVAL == timedelta(minutes=10)


def test_client_options_carry_reconnect_policy(store):
    options = store.client_options()

    assert options["socket_connect_timeout"] == CONNECT_TIMEOUT_SECONDS
    assert options["retry_on_timeout"] is True
    assert options["retry"] is not None


def test_parse_sentinel_url():
    hosts, db, password = parse_sentinel_url(
        "redis://:s3cret@sentinel-a:26379,sentinel-b:26380,sentinel-c/2"
    )

    assert hosts == [("sentinel-a", 26379), ("sentinel-b", 26380), ("sentinel-c", 26379)]
    assert db == 2
    assert password == "s3cret"


async def test_save_and_load(store, fake_redis, clock):
    await store.save("abc", {"user": "ada", "created_at": clock()})

    record = json.loads(fake_redis.values["sessions:abc"])
    assert record["_id"] == "abc"
    assert datetime.fromisoformat(record["expires"]) == clock() + SESSION_TTL
    assert fake_redis.expirations["sessions:abc"] == 30 * 60
    assert fake_redis.sorted_sets["sessions:expires"]["abc"] == (clock() + SESSION_TTL).timestamp()

    data = await store.load("abc")
    assert data["user"] == "ada"
    assert data["created_at"] == str(clock())


async def test_load_missing_session(store):
    assert await store.load("missing") is None


async def test_load_ignores_expired_record(store, clock):
    await store.save("abc", {"user": "ada"})
    clock.advance(SESSION_TTL + timedelta(seconds=1))

    assert await store.load("abc") is None


async def test_remove_expired_only_drops_expired(store, fake_redis, clock):
    await store.save("old", {"n": 1})
    clock.advance(timedelta(minutes=20))
    await store.save("fresh", {"n": 2})
    clock.advance(timedelta(minutes=15))

    assert await store.remove_expired() == 1
    assert "sessions:old" not in fake_redis.values
    assert "sessions:fresh" in fake_redis.values
    assert list(fake_redis.sorted_sets["sessions:expires"]) == ["fresh"]
    assert await store.remove_expired() == 0


async def test_destroy(store, fake_redis):
    await store.save("abc", {"n": 1})
    await store.destroy("abc")

    assert fake_redis.values == {}
    assert fake_redis.sorted_sets["sessions:expires"] == {}


async def test_store_errors_are_reported_to_listeners(store, fake_redis):
    errors = []
    store.add_error_listener(errors.append)
    fake_redis.fail_with = RedisConnectionError("connection lost")

    await store.connect()
    await store.save("abc", {"n": 1})
    with pytest.raises(SessionStoreError):
        await store.load("abc")
    assert await store.remove_expired() == 0

    assert [e.operation for e in errors] == ["connect", "save", "load", "remove_expired"]
    assert all(isinstance(e, SessionStoreError) for e in errors)
    assert errors[1].session_id == "abc"


async def test_corrupt_record_is_reported(store, fake_redis):
    errors = []
    store.add_error_listener(errors.append)
    fake_redis.values["sessions:abc"] = "not json"

    assert await store.load("abc") is None
    assert errors[0].operation == "decode"


async def test_manager_logs_store_errors(store, fake_redis, log, caplog):
    SessionManager(store, SessionCookieSigner(TEST_SECRET), "sid", log)
    fake_redis.fail_with = RedisConnectionError("connection lost")

    await store.save("abc", {"n": 1})

    error_records = records_for(caplog, logging.ERROR)
    assert len(error_records) == 1
    assert "error on session store" in error_records[0].getMessage()
    assert error_records[0].operation == "save"


async def test_manager_sweeps_independently_of_requests(store, fake_redis, clock, log):
    manager = SessionManager(
        store,
        SessionCookieSigner(TEST_SECRET),
        "sid",
        log,
        sweep_interval=timedelta(milliseconds=10),
    )
    await store.save("old", {"n": 1})
    clock.advance(SESSION_TTL * 2)

    await manager.start()
    try:
        for _ in range(50):
            if "sessions:old" not in fake_redis.values:
                break
            await asyncio.sleep(0.01)
    finally:
        await manager.stop()

    assert "sessions:old" not in fake_redis.values
    assert manager.sweep_task is None
    assert fake_redis.pings == 1
    assert fake_redis.closed


async def test_sweep_survives_unexpected_errors(store, fake_redis, clock, log, caplog, monkeypatch):
    manager = SessionManager(
        store,
        SessionCookieSigner(TEST_SECRET),
        "sid",
        log,
        sweep_interval=timedelta(milliseconds=10),
    )
    calls = []
    remove_expired = store.remove_expired

    async def flaky_remove_expired():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("unexpected sweep failure")
        return await remove_expired()

    monkeypatch.setattr(store, "remove_expired", flaky_remove_expired)
    await store.save("old", {"n": 1})
    clock.advance(SESSION_TTL * 2)

    await manager.start()
    try:
        for _ in range(50):
            if "sessions:old" not in fake_redis.values:
                break
            await asyncio.sleep(0.01)
        assert not manager.sweep_task.done()
    finally:
        await manager.stop()

    assert len(calls) >= 2
    assert "sessions:old" not in fake_redis.values
    failures = [r for r in records_for(caplog, logging.ERROR) if r.exc_info]
    assert "sweep failed" in failures[0].getMessage()
