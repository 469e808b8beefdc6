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
Per-request context threaded through the middleware pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from aiohttp import web

from ..logging_config import ContextLogger, get_loggers

if TYPE_CHECKING:
    from .session import Session

REQUEST_CONTEXT_KEY = "bulwark_request_context"
SESSION_KEY = "bulwark_session"
APP_LOGGER_KEY = web.AppKey("bulwark_log", ContextLogger)
REQUEST_ID_HEADER = "X-Request-Id"


@dataclass
class RequestContext:
    """
    Correlation data for one request.

    ``session`` is a reference to the store-owned session, or None when
    sessions are disabled.
    """

    request_id: str
    log: ContextLogger
    session: Optional[Session] = None


def get_request_context(request: web.Request) -> Optional[RequestContext]:
    return request.get(REQUEST_CONTEXT_KEY)


def request_logger(request: web.Request) -> ContextLogger:
    """The request's correlated logger, or the application logger outside one."""
    context = get_request_context(request)
    if context is not None:
        return context.log
    app_log = request.app.get(APP_LOGGER_KEY)
    if app_log is not None:
        return app_log
    return ContextLogger(get_loggers()[0])
