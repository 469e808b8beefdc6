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
Middleware module for the bulwark request pipeline.

This module provides middlewares for:
- Session management (cookie resolution, end-of-request persistence)
- Request correlation (request id, per-request logger, request log line)
- Error logging (unhandled exceptions logged with the request's logger)
"""

import time
import uuid
from typing import Awaitable, Callable

from aiohttp import web

from ..logging_config import ContextLogger
from .context import (
    REQUEST_CONTEXT_KEY,
    REQUEST_ID_HEADER,
    SESSION_KEY,
    RequestContext,
    get_request_context,
    request_logger,
)
from .session import SessionManager

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def generate_request_id() -> str:
    return str(uuid.uuid4())


def session_middleware(manager: SessionManager):
    """
    Middleware factory for session management.

    Resolves the session from the signed cookie (creating one if absent),
    stores it on the request, and persists it once the handler is done,
    including when the handler raises an HTTP exception such as a redirect.
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        session = await manager.load(request)
        request[SESSION_KEY] = session

        try:
            response = await handler(request)
        except web.HTTPException as exc:
            await manager.persist(request, exc, session)
            raise

        await manager.persist(request, response, session)
        return response

    return middleware


def correlation_middleware(log: ContextLogger):
    """
    Middleware factory for request correlation.

    Handles:
    - Request id: reused from ``X-Request-Id`` or freshly generated
    - A child logger bound to the request id, exposed on the RequestContext
    - One access line per request, and a debug timing line on completion
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        start_time = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        request_log = log.child(request_id=request_id)
        request[REQUEST_CONTEXT_KEY] = RequestContext(
            request_id=request_id,
            log=request_log,
            session=request.get(SESSION_KEY),
        )

        request_log.info(
            f"request {request.method} {request.path_qs}",
            extra={
                "http_method": request.method,
                "http_path_qs": request.path_qs,
                "remote_address": request.remote,
            },
        )

        response = await handler(request)

        request_log.debug(
            f"request handled in {time.perf_counter() - start_time:.3f}s",
            extra={"status": response.status},
        )
        return response

    return middleware


async def attach_request_id(request: web.Request, response: web.StreamResponse) -> None:
    """on_response_prepare hook echoing the correlation id on every response."""
    context = get_request_context(request)
    if context is not None:
        response.headers[REQUEST_ID_HEADER] = context.request_id


def error_logging_middleware():
    """
    Middleware factory for error logging.

    Unhandled exceptions are logged through the request's logger so the
    traceback carries the request id, then re-raised for aiohttp to answer.
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            request_logger(request).exception(
                f"Unhandled exception in request handler: {e}"
            )
            raise

    return middleware
