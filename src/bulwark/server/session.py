# MIT License
#
# Copyright (c) 2025 Timothy J Fontaine
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Persistent sessions backed by Redis.

Records are stored as JSON under ``<collection>:<session id>`` with an expiry
index in the sorted set ``<collection>:expires``. Records live for
``SESSION_TTL``; a background sweep removes expired records every
``SWEEP_INTERVAL`` whether or not requests arrive.

Store failures never reach the request: they are handed to error listeners as
``SessionStoreError`` and the client reconnects on its own retry policy. A
failed read is also raised to the manager, which keeps the client's session
id instead of issuing a new cookie.
"""

import abc
import asyncio
import base64
import contextlib
import hashlib
import hmac
import json
import secrets
from collections.abc import MutableMapping
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterator, Optional
from urllib.parse import unquote, urlsplit

from aiohttp import web
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.asyncio.sentinel import Sentinel
from redis.backoff import ConstantBackoff
from redis.exceptions import RedisError

from ..logging_config import ContextLogger
from .context import SESSION_KEY
from .errors import SessionStoreError
from .proxy import request_is_secure

SESSION_TTL = timedelta(minutes=30)
SWEEP_INTERVAL = timedelta(minutes=10)

RECONNECT_TRIES = 86400
RECONNECT_INTERVAL_SECONDS = 1.0
CONNECT_TIMEOUT_SECONDS = 60.0
HEALTH_CHECK_INTERVAL_SECONDS = 30
DEFAULT_SENTINEL_PORT = 26379

STORE_ERRORS = (RedisError, OSError)

ErrorListener = Callable[[SessionStoreError], None]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    return secrets.token_urlsafe(24)


class Session(MutableMapping):
    """Application-visible session data with change tracking."""

    def __init__(
        self,
        session_id: str,
        data: Optional[dict[str, Any]] = None,
        *,
        new: bool = False,
    ):
        self._id = session_id
        self._data: dict[str, Any] = dict(data or {})
        self._new = new
        self._modified = False
        self._invalidated = False

    @property
    def id(self) -> str:
        return self._id

    @property
    def new(self) -> bool:
        return self._new

    @property
    def modified(self) -> bool:
        return self._modified

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def changed(self) -> None:
        """Mark the session dirty after mutating a nested value in place."""
        self._modified = True

    def invalidate(self) -> None:
        """Drop the session: the record is deleted and the cookie expired."""
        self._data.clear()
        self._invalidated = True
        self._modified = True

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._modified = True

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._modified = True

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return (
            f"<Session id={self._id!r} new={self._new} "
            f"modified={self._modified} data={self._data!r}>"
        )


class SessionCookieSigner:
    """HMAC-SHA256 signing of session ids carried in cookies."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("A session secret is required to sign cookies")
        self._key = secret.encode("utf-8")

    def _signature(self, session_id: str) -> str:
        digest = hmac.new(
            self._key, session_id.encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def sign(self, session_id: str) -> str:
        return f"{session_id}.{self._signature(session_id)}"

    def unsign(self, cookie_value: str) -> Optional[str]:
        """Return the session id, or None when the signature does not match."""
        session_id, sep, signature = cookie_value.rpartition(".")
        if not sep or not session_id:
            return None
        if not hmac.compare_digest(signature, self._signature(session_id)):
            return None
        return session_id


class AbstractSessionStore(abc.ABC):
    """Abstract base class for session storage."""

    def __init__(self):
        self._error_listeners: list[ErrorListener] = []

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def _report_error(
        self, operation: str, cause: Exception, session_id: Optional[str] = None
    ) -> SessionStoreError:
        error = SessionStoreError(operation, cause, session_id)
        for listener in list(self._error_listeners):
            listener(error)
        return error

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the connection to the backing store."""
        pass

    @abc.abstractmethod
    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def load(self, session_id: str) -> Optional[dict[str, Any]]:
        """
        Return unexpired session data, or None if there is none.

        Raises SessionStoreError when the store cannot be read, so a miss is
        never confused with an outage.
        """
        pass

    @abc.abstractmethod
    async def save(self, session_id: str, data: dict[str, Any]) -> None:
        """Store session data, restarting its time-to-live."""
        pass

    @abc.abstractmethod
    async def destroy(self, session_id: str) -> None:
        pass

    @abc.abstractmethod
    async def remove_expired(self) -> int:
        """Delete expired records and return how many were removed."""
        pass


def parse_sentinel_url(url: str) -> tuple[list[tuple[str, int]], int, Optional[str]]:
    """
    Split ``redis://[:password@]host1:port1,host2:port2/db`` into sentinel
    addresses, database number and password.
    """
    parts = urlsplit(url)
    netloc = parts.netloc
    password = None
    if "@" in netloc:
        credentials, netloc = netloc.rsplit("@", 1)
        password = unquote(credentials.split(":", 1)[-1]) or None

    hosts = []
    for host_port in netloc.split(","):
        host, _, port = host_port.strip().partition(":")
        hosts.append((host, int(port or DEFAULT_SENTINEL_PORT)))

    db_part = parts.path.lstrip("/")
    return hosts, int(db_part) if db_part else 0, password


class RedisSessionStore(AbstractSessionStore):
    """Session store persisting records in Redis."""

    def __init__(
        self,
        connection_string: str,
        collection: str,
        *,
        replica_set: Optional[str] = None,
        ttl: timedelta = SESSION_TTL,
        client: Optional[Redis] = None,
        clock: Clock = _utcnow,
    ):
        super().__init__()
        self._connection_string = connection_string
        self._collection = collection
        self._replica_set = replica_set
        self._ttl = ttl
        self._client = client
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def client(self) -> Optional[Redis]:
        return self._client

    def client_options(self) -> dict[str, Any]:
        """Connection-level retry settings handed to the Redis client."""
        return {
            "retry": Retry(ConstantBackoff(RECONNECT_INTERVAL_SECONDS), RECONNECT_TRIES),
            "retry_on_timeout": True,
            "socket_connect_timeout": CONNECT_TIMEOUT_SECONDS,
            "health_check_interval": HEALTH_CHECK_INTERVAL_SECONDS,
            "decode_responses": True,
        }

    def _create_client(self) -> Redis:
        options = self.client_options()
        if self._replica_set:
            hosts, db, password = parse_sentinel_url(self._connection_string)
            sentinel = Sentinel(
                hosts,
                socket_connect_timeout=CONNECT_TIMEOUT_SECONDS,
            )
            return sentinel.master_for(
                self._replica_set, db=db, password=password, **options
            )
        return Redis.from_url(self._connection_string, **options)

    def _key(self, session_id: str) -> str:
        return f"{self._collection}:{session_id}"

    @property
    def _expiry_index(self) -> str:
        return f"{self._collection}:expires"

    async def connect(self) -> None:
        if self._client is None:
            self._client = self._create_client()
        try:
            await self._client.ping()
        except STORE_ERRORS as e:
            self._report_error("connect", e)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def load(self, session_id: str) -> Optional[dict[str, Any]]:
        try:
            raw_record = await self._client.get(self._key(session_id))
        except STORE_ERRORS as e:
            raise self._report_error("load", e, session_id) from e
        if raw_record is None:
            return None

        try:
            record = json.loads(raw_record)
            expires = datetime.fromisoformat(record["expires"])
        except (ValueError, KeyError, TypeError) as e:
            self._report_error("decode", e, session_id)
            return None
        if expires <= self._clock():
            return None
        return record.get("session") or {}

    async def save(self, session_id: str, data: dict[str, Any]) -> None:
        expires = self._clock() + self._ttl
        record = {"_id": session_id, "expires": expires.isoformat(), "session": data}
        try:
            await self._client.set(
                self._key(session_id),
                json.dumps(record, default=str),
                ex=int(self._ttl.total_seconds()),
            )
            await self._client.zadd(
                self._expiry_index, {session_id: expires.timestamp()}
            )
        except STORE_ERRORS as e:
            self._report_error("save", e, session_id)

    async def destroy(self, session_id: str) -> None:
        try:
            await self._client.delete(self._key(session_id))
            await self._client.zrem(self._expiry_index, session_id)
        except STORE_ERRORS as e:
            self._report_error("destroy", e, session_id)

    async def remove_expired(self) -> int:
        try:
            expired = await self._client.zrangebyscore(
                self._expiry_index, "-inf", self._clock().timestamp()
            )
            if not expired:
                return 0
            await self._client.delete(*(self._key(sid) for sid in expired))
            await self._client.zrem(self._expiry_index, *expired)
        except STORE_ERRORS as e:
            self._report_error("remove_expired", e)
            return 0
        return len(expired)


class SessionManager:
    """
    Owns the session store lifecycle and the per-request session cycle.
    """

    def __init__(
        self,
        store: AbstractSessionStore,
        signer: SessionCookieSigner,
        cookie_name: str,
        log: ContextLogger,
        *,
        sweep_interval: timedelta = SWEEP_INTERVAL,
    ):
        self._store = store
        self._signer = signer
        self._cookie_name = cookie_name
        self._log = log
        self._sweep_interval = sweep_interval
        self._sweep_task: Optional[asyncio.Task] = None
        store.add_error_listener(self._on_store_error)

    @property
    def store(self) -> AbstractSessionStore:
        return self._store

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    @property
    def sweep_task(self) -> Optional[asyncio.Task]:
        return self._sweep_task

    def _on_store_error(self, error: SessionStoreError) -> None:
        self._log.error(
            f"[bulwark] error on session store: {error}",
            extra={"operation": error.operation, "session_id": error.session_id},
        )

    async def start(self) -> None:
        await self._store.connect()
        self._sweep_task = asyncio.create_task(self._sweep_periodically())
        self._log.info(
            "[bulwark] session store ready",
            extra={"sweep_interval_seconds": self._sweep_interval.total_seconds()},
        )

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self._store.close()

    async def cleanup_ctx(self, app: web.Application) -> AsyncIterator[None]:
        """aiohttp cleanup context tying the store to the application lifetime."""
        await self.start()
        yield
        await self.stop()

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval.total_seconds())
            try:
                removed = await self._store.remove_expired()
            except Exception:
                self._log.exception("[bulwark] expired session sweep failed")
                continue
            if removed:
                self._log.debug(f"[bulwark] removed {removed} expired session(s)")

    async def load(self, request: web.Request) -> Session:
        """Resolve the request's session, creating a new one if absent."""
        cookie_value = request.cookies.get(self._cookie_name)
        session_id = self._signer.unsign(cookie_value) if cookie_value else None
        if session_id is not None:
            try:
                data = await self._store.load(session_id)
            except SessionStoreError:
                # Saved only if the handler changes it; no new cookie is issued
                return Session(session_id)
            if data is not None:
                return Session(session_id, data)
        return Session(generate_session_id(), new=True)

    async def persist(
        self, request: web.Request, response: web.StreamResponse, session: Session
    ) -> None:
        """Write the session back and issue or expire the cookie."""
        if session.invalidated:
            await self._store.destroy(session.id)
            if not session.new and not response.prepared:
                response.del_cookie(self._cookie_name, path="/")
            return

        if session.new or session.modified:
            await self._store.save(session.id, session.to_dict())

        if not session.new:
            return
        if response.prepared:
            self._log.debug(
                "[bulwark] response already sent, session cookie not issued",
                extra={"session_id": session.id},
            )
        elif not request_is_secure(request):
            # Secure cookies need TLS, or X-Forwarded-Proto from the proxy
            self._log.debug(
                "[bulwark] insecure request, session cookie not issued",
                extra={"session_id": session.id},
            )
        else:
            response.set_cookie(
                self._cookie_name,
                self._signer.sign(session.id),
                path="/",
                secure=True,
                httponly=True,
            )


def get_session(request: web.Request) -> Optional[Session]:
    return request.get(SESSION_KEY)
