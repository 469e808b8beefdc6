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
Content-Security-Policy generation and the violation report sink.

The policy depends on the request hostname, so the header value is computed per
response: the hostname-independent default policy is built once at import and
only the scheme-qualified origin tokens are substituted per request.
"""

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from aiohttp import web

from ..logging_config import ContextLogger
from .context import request_logger
from .proxy import forwarded_hostname

CspPolicy = Dict[str, List[str]]
OverridePolicy = Mapping[str, Union[str, Sequence[str]]]

LOOPBACK_HOSTNAME = "localhost"
REPORT_PATH = "/report"

# Firefox 23+, Chrome 25+ read the first; IE10+ reads the second
CSP_HEADER_NAMES = ("Content-Security-Policy", "X-Content-Security-Policy")

REPORT_MEDIA_TYPES = ("application/json", "application/csp-report")

GOOGLE_ORIGINS = (
    "https://*.googleapis.com",
    "https://*.google-analytics.com",
    "https://*.googlecode.com",
    "https://*.gstatic.com",
    "https://*.google.com",
    "https://*.youtube.com",
    "https://*.ytimg.com",
)

_HTTP_ORIGIN = "<http-origin>"
_WS_ORIGIN = "<ws-origin>"

_DEFAULT_POLICY_TEMPLATE: Dict[str, tuple] = {
    "default-src": ("'self'", "data:", _HTTP_ORIGIN, *GOOGLE_ORIGINS),
    "script-src": ("'self'", "'unsafe-inline'", _HTTP_ORIGIN, *GOOGLE_ORIGINS),
    "style-src": (
        "'self'",
        "'unsafe-inline'",
        _HTTP_ORIGIN,
        "https://fonts.googleapis.com",
        *GOOGLE_ORIGINS,
    ),
    "img-src": (
        "'self'",
        "data:",
        _HTTP_ORIGIN,
        "https://secure.gravatar.com",
        *GOOGLE_ORIGINS,
    ),
    "connect-src": ("'self'", _WS_ORIGIN, *GOOGLE_ORIGINS),
    "font-src": (
        "'self'",
        "data:",
        _HTTP_ORIGIN,
        "https://themes.googleusercontent.com",
        "https://fonts.googleapis.com",
        "https://fonts.gstatic.com",
    ),
    "report-uri": (REPORT_PATH,),
}


def scheme_origins(hostname: str) -> tuple[str, str]:
    """Return the (http, websocket) origins allowed for ``hostname``."""
    if hostname == LOOPBACK_HOSTNAME:
        return f"http://{hostname}", f"ws://{hostname}"
    return f"https://{hostname}", f"wss://{hostname}"


def default_policy(hostname: str) -> CspPolicy:
    http_origin, ws_origin = scheme_origins(hostname)
    substitutions = {_HTTP_ORIGIN: http_origin, _WS_ORIGIN: ws_origin}
    return {
        directive: [substitutions.get(token, token) for token in tokens]
        for directive, tokens in _DEFAULT_POLICY_TEMPLATE.items()
    }


def _as_tokens(value: Union[str, Iterable[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def merge_policies(base: CspPolicy, override: Optional[OverridePolicy]) -> CspPolicy:
    """
    Combine two policies directive by directive.

    A directive the override gives any tokens for is replaced wholesale;
    otherwise the base tokens are kept. Directives only known to the override
    are appended after the base directives.
    """
    merged = {directive: list(tokens) for directive, tokens in base.items()}
    for directive, value in (override or {}).items():
        tokens = _as_tokens(value)
        if tokens:
            merged[directive] = tokens
    return merged


def serialize_policy(policy: CspPolicy) -> str:
    return "".join(
        f"{directive} {' '.join(tokens)};" for directive, tokens in policy.items()
    )


def generate(hostname: str, override_policy: Optional[OverridePolicy] = None) -> str:
    """Build the serialized CSP header value for a request to ``hostname``."""
    return serialize_policy(
        merge_policies(default_policy(hostname or ""), override_policy)
    )


def _is_report_media_type(content_type: str) -> bool:
    return content_type in REPORT_MEDIA_TYPES or content_type.endswith("+json")


async def handle_csp_report(request: web.Request) -> web.Response:
    """
    Log a CSP violation report at warning level.

    Always answers ``{}``: a malformed body is logged as a parse warning
    instead of failing the request.
    """
    log = request_logger(request)
    report: Any = {}
    if _is_report_media_type(request.content_type):
        raw_body = await request.read()
        if raw_body:
            try:
                report = json.loads(raw_body)
            except ValueError as e:
                log.warning(
                    "Could not parse CSP report body",
                    extra={"parse_error": str(e), "body_size": len(raw_body)},
                )
                return web.json_response({})

    log.warning("CSP Report", extra={"csp_report": report})
    return web.json_response({})


def setup_content_security(
    app: web.Application,
    override_policy: Optional[OverridePolicy],
    log: ContextLogger,
) -> None:
    """
    Attach CSP headers to every response of ``app`` and register the
    violation report sink.
    """

    async def on_response_prepare(
        request: web.Request, response: web.StreamResponse
    ) -> None:
        header_value = generate(forwarded_hostname(request), override_policy)
        for header_name in CSP_HEADER_NAMES:
            response.headers[header_name] = header_value

    app.on_response_prepare.append(on_response_prepare)
    app.router.add_post(REPORT_PATH, handle_csp_report)
    log.debug(
        "Content security policy enabled",
        extra={"override_directives": sorted(override_policy or {})},
    )
