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
Bootstrap orchestration: composes the listener, security headers, sessions
and request correlation around an aiohttp application.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional

from aiohttp import web

from ..config import ServerConfig
from ..logging_config import ContextLogger, bind_logger
from .binder import BindState, PortBindController, SiteFactory, StateListener
from .context import APP_LOGGER_KEY
from .csp import setup_content_security
from .errors import PortBindError
from .middleware import (
    attach_request_id,
    correlation_middleware,
    error_logging_middleware,
    session_middleware,
)
from .session import (
    AbstractSessionStore,
    ErrorListener,
    RedisSessionStore,
    SessionCookieSigner,
    SessionManager,
)
from .views import setup_views

CONFIG_KEY = web.AppKey("bulwark_config", ServerConfig)


class Bulwark:
    """
    A wrapper for the aiohttp web server.

    Setup runs in a fixed order on construction: logger, listener, CSP,
    sessions, correlation. Routes registered on ``router`` afterwards see the
    request context, session and CSP headers. ``start()`` binds the port.
    """

    def __init__(
        self,
        config: ServerConfig,
        *,
        session_store: Optional[AbstractSessionStore] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        site_factory: SiteFactory = web.TCPSite,
    ):
        self._config = config
        self._started = False
        self._session_manager: Optional[SessionManager] = None

        self._log = self._enable_logger()
        self._app = web.Application()
        self._app[APP_LOGGER_KEY] = self._log
        self._app[CONFIG_KEY] = config
        self._runner = web.AppRunner(self._app)
        self._binder = PortBindController(
            self._runner,
            config.host,
            config.port,
            self._log,
            rng=rng,
            sleep=sleep,
            site_factory=site_factory,
        )
        setup_views(self._app, config.template_layout_dir, config.template_dir)

        if config.content_security:
            setup_content_security(
                self._app, config.content_security_policy, self._log
            )
        if config.sessions_enabled:
            self._set_sessions(session_store)
        self._set_logging()

    def _enable_logger(self) -> ContextLogger:
        return bind_logger(self._config.logger, self._config.logger_context)

    def _set_sessions(self, session_store: Optional[AbstractSessionStore]) -> None:
        store = session_store or RedisSessionStore(
            self._config.database_connection_string,
            self._config.session_collection,
            replica_set=self._config.database_replica_set,
        )
        self._session_manager = SessionManager(
            store,
            SessionCookieSigner(self._config.session_secret),
            self._config.session_name,
            self._log,
        )
        self._app.cleanup_ctx.append(self._session_manager.cleanup_ctx)
        self._app.middlewares.append(session_middleware(self._session_manager))

    def _set_logging(self) -> None:
        self._app.middlewares.append(correlation_middleware(self._log))
        self._app.middlewares.append(error_logging_middleware())
        self._app.on_response_prepare.append(attach_request_id)

    @property
    def router(self) -> web.Application:
        """The request pipeline the embedding application adds routes to."""
        return self._app

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def log(self) -> ContextLogger:
        return self._log

    @property
    def state(self) -> Optional[BindState]:
        return self._binder.state

    @property
    def binder(self) -> PortBindController:
        return self._binder

    @property
    def session_manager(self) -> Optional[SessionManager]:
        return self._session_manager

    def on_state_change(self, listener: StateListener) -> None:
        self._binder.add_listener(listener)

    def on_session_store_error(self, listener: ErrorListener) -> None:
        if self._session_manager is not None:
            self._session_manager.store.add_error_listener(listener)

    async def start(self) -> BindState:
        """
        Set up the application and make the first bind attempt.

        Raises PortBindError when the port cannot be bound for a reason other
        than being in use; the listener then stays FAILED.
        """
        await self._runner.setup()
        self._started = True
        try:
            return await self._binder.start()
        except PortBindError:
            self._log.error(
                f"[bulwark] http server could not start on port {self._config.port}"
            )
            raise

    async def stop(self) -> None:
        await self._binder.stop()
        if self._started:
            await self._runner.cleanup()
            self._started = False
        self._log.info("[bulwark] http server stopped")
