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
Helpers for requests arriving through a trusted TLS-terminating reverse proxy.

The proxy is always trusted: ``X-Forwarded-Host`` and ``X-Forwarded-Proto``
take precedence over what the socket reports.
"""

from aiohttp import hdrs, web


def _first_value(header_value: str) -> str:
    # Proxy chains append; the client-facing value comes first
    return header_value.split(",", 1)[0].strip()


def forwarded_hostname(request: web.BaseRequest) -> str:
    """The hostname the client asked for, without any port."""
    forwarded_host = request.headers.get(hdrs.X_FORWARDED_HOST)
    host = _first_value(forwarded_host) if forwarded_host else (request.host or "")

    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    return host.split(":", 1)[0]


def request_is_secure(request: web.BaseRequest) -> bool:
    forwarded_proto = request.headers.get(hdrs.X_FORWARDED_PROTO)
    if forwarded_proto:
        return _first_value(forwarded_proto).lower() == "https"
    return request.secure
