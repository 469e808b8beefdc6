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
Listen-port acquisition with jittered, capped backoff.

State machine::

    STARTING -> ACTIVE
    STARTING -> WAITING_TO_RETRY -> STARTING   (port in use, no retry limit)
    STARTING -> FAILED                         (any other bind error, terminal)

The retry task is the only background work this controller owns, and at most
one bind attempt is ever in flight.
"""

import asyncio
import contextlib
import errno
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from aiohttp import web

from ..logging_config import ContextLogger
from .errors import PortBindError

RETRY_INCREMENT_MIN_MS = 4 * 1000
RETRY_INCREMENT_MAX_MS = 20 * 1000
RETRY_CEILING_MS = 60 * 60 * 1000
RETRY_FLOOR_MS = 60 * 1000


class BindState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    WAITING_TO_RETRY = "waiting_to_retry"
    FAILED = "failed"


@dataclass(frozen=True)
class BackoffState:
    delay_ms: int = 0


def next_backoff(state: BackoffState, rng: random.Random) -> BackoffState:
    """
    Grow the delay by a random 4-20s step; past one hour it drops back to
    one minute.
    """
    delay_ms = state.delay_ms + rng.randint(
        RETRY_INCREMENT_MIN_MS, RETRY_INCREMENT_MAX_MS
    )
    if delay_ms > RETRY_CEILING_MS:
        delay_ms = RETRY_FLOOR_MS
    return BackoffState(delay_ms=delay_ms)


def is_port_in_use(error: OSError) -> bool:
    return error.errno == errno.EADDRINUSE


StateListener = Callable[[Optional[BindState], BindState], None]
SiteFactory = Callable[[web.BaseRunner, str, int], web.BaseSite]


class PortBindController:
    """Owns the listening site of an aiohttp runner."""

    def __init__(
        self,
        runner: web.BaseRunner,
        host: str,
        port: int,
        log: ContextLogger,
        *,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        site_factory: SiteFactory = web.TCPSite,
    ):
        self._runner = runner
        self._host = host
        self._port = port
        self._log = log
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._site_factory = site_factory
        self._state: Optional[BindState] = None
        self._backoff = BackoffState()
        self._site: Optional[web.BaseSite] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> Optional[BindState]:
        return self._state

    @property
    def backoff(self) -> BackoffState:
        return self._backoff

    @property
    def retry_task(self) -> Optional[asyncio.Task]:
        return self._retry_task

    @property
    def site(self) -> Optional[web.BaseSite]:
        return self._site

    def add_listener(self, listener: StateListener) -> None:
        """Call ``listener(old_state, new_state)`` on every transition."""
        self._listeners.append(listener)

    def _transition(self, new_state: BindState) -> None:
        old_state = self._state
        self._state = new_state
        self._log.debug(
            f"[bulwark] listener on port {self._port}: "
            f"{old_state.value if old_state else 'new'} -> {new_state.value}",
            extra={"port": self._port, "bind_state": new_state.value},
        )
        for listener in list(self._listeners):
            listener(old_state, new_state)

    async def start(self) -> BindState:
        """
        Make the first bind attempt.

        Returns ACTIVE, or WAITING_TO_RETRY when the port is taken. Raises
        PortBindError for any other bind failure.
        """
        self._log.info(f"[bulwark] starting http server on port {self._port}")
        return await self._attempt()

    async def _attempt(self) -> BindState:
        self._transition(BindState.STARTING)
        site = self._site_factory(self._runner, self._host, self._port)
        try:
            await site.start()
        except asyncio.CancelledError:
            await site.stop()
            raise
        except OSError as error:
            await site.stop()
            if is_port_in_use(error):
                self._log.warning(
                    f"[bulwark] port {self._port} is already in use",
                    extra={"port": self._port, "error": str(error)},
                )
                self._schedule_retry()
                return BindState.WAITING_TO_RETRY

            self._log.error(
                f"[bulwark] Error on http server: {error}",
                extra={"port": self._port, "errno": error.errno},
            )
            self._transition(BindState.FAILED)
            raise PortBindError(self._host, self._port, error) from error

        self._site = site
        self._transition(BindState.ACTIVE)
        self._log.info(
            f"[bulwark] http server listening on http://{self._host}:{self._port}"
        )
        return BindState.ACTIVE

    def _schedule_retry(self) -> None:
        self._backoff = next_backoff(self._backoff, self._rng)
        delay_ms = self._backoff.delay_ms
        retry_at = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        self._transition(BindState.WAITING_TO_RETRY)
        self._log.info(
            f"[bulwark] will retry port {self._port} in {delay_ms / 1000} seconds",
            extra={"retry_delay_ms": delay_ms, "retry_at": retry_at.isoformat()},
        )
        self._retry_task = asyncio.create_task(self._retry_after(delay_ms))

    async def _retry_after(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        self._log.info(f"[bulwark] retrying to listen on {self._port}")
        try:
            await self._attempt()
        except PortBindError:
            # Terminal; already logged and delivered to listeners as FAILED
            return
        finally:
            # A failed attempt may already have scheduled the next retry
            if self._retry_task is asyncio.current_task():
                self._retry_task = None

    async def stop(self) -> None:
        """Cancel a pending or in-flight retry and close the listening site."""
        if self._retry_task is not None:
            self._retry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retry_task
            self._retry_task = None
        if self._site is not None:
            await self._site.stop()
            self._site = None
