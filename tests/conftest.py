import logging

import pytest
from aiohttp import web

from bulwark.config import ServerConfig
from bulwark.server.context import get_request_context
from bulwark.server.session import RedisSessionStore
from bulwark.server.web_resource import Bulwark

TEST_LOGGER_NAME = "bulwark_test"
TEST_SECRET = "I<3Bulwark"
TEST_SESSION_NAME = "bulwark-session"


class FakeRedis:
    """In-memory stand-in for the part of redis.asyncio.Redis the session store uses."""

    def __init__(self):
        self.values = {}
        self.expirations = {}
        self.sorted_sets = {}
        self.fail_with = None
        self.closed = False
        self.pings = 0

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self):
        self._check()
        self.pings += 1
        return True

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        self.expirations[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.expirations.pop(key, None)
        return removed

    async def zadd(self, name, mapping):
        self._check()
        members = self.sorted_sets.setdefault(name, {})
        added = len(set(mapping) - set(members))
        members.update(mapping)
        return added

    async def zrangebyscore(self, name, min, max):
        self._check()
        low, high = float(min), float(max)
        members = self.sorted_sets.get(name, {})
        return [
            member
            for member, score in sorted(members.items(), key=lambda item: item[1])
            if low <= score <= high
        ]

    async def zrem(self, name, *values):
        self._check()
        members = self.sorted_sets.get(name, {})
        return sum(1 for value in values if members.pop(value, None) is not None)

    async def aclose(self):
        self.closed = True


async def handle_index(request):
    context = get_request_context(request)
    return web.json_response(
        {
            "request_id": context.request_id,
            "has_session": context.session is not None,
        }
    )


async def handle_session(request):
    session = get_request_context(request).session
    session["visits"] = session.get("visits", 0) + 1
    return web.json_response({"visits": session["visits"], "session_id": session.id})


async def handle_logout(request):
    get_request_context(request).session.invalidate()
    return web.json_response({"logged_out": True})


async def handle_boom(request):
    raise RuntimeError("boom")


def add_test_routes(app: web.Application) -> None:
    app.router.add_get("/", handle_index)
    app.router.add_get("/session", handle_session)
    app.router.add_get("/logout", handle_logout)
    app.router.add_get("/boom", handle_boom)


def records_for(caplog, level):
    return [
        record
        for record in caplog.records
        if record.name == TEST_LOGGER_NAME and record.levelno == level
    ]


@pytest.fixture
def test_logger(caplog):
    caplog.set_level(logging.DEBUG, logger=TEST_LOGGER_NAME)
    return logging.getLogger(TEST_LOGGER_NAME)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_config(test_logger):
    def _make(**overrides):
        values = {
            "port": 8080,
            "host": "127.0.0.1",
            "sessions_enabled": True,
            "session_secret": TEST_SECRET,
            "session_name": TEST_SESSION_NAME,
            "session_collection": "sessions",
            "database_connection_string": "redis://localhost:6379/0",
            "content_security": True,
            "logger": test_logger,
            "logger_context": "HTTP-TEST",
        }
        values.update(overrides)
        return ServerConfig(**values)

    return _make


@pytest.fixture
def make_server(make_config, fake_redis):
    def _make(**overrides):
        config = make_config(**overrides)
        store = RedisSessionStore(
            config.database_connection_string,
            config.session_collection,
            client=fake_redis,
        )
        server = Bulwark(config, session_store=store)
        add_test_routes(server.router)
        return server

    return _make


@pytest.fixture
def make_client(aiohttp_client, make_server):
    async def _make(**overrides):
        server = make_server(**overrides)
        client = await aiohttp_client(server.router)
        return server, client

    return _make
