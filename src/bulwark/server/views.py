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
View engine wiring for the embedding application's templates.
"""

from typing import Any, Mapping, Optional

import jinja2
from aiohttp import web

from .context import get_request_context

DEFAULT_LAYOUT = "main.html"

JINJA_ENV_KEY = web.AppKey("bulwark_jinja_env", jinja2.Environment)


def setup_views(
    app: web.Application,
    layout_dir: Optional[str],
    template_dir: Optional[str],
) -> Optional[jinja2.Environment]:
    """
    Create the Jinja2 environment for ``app``.

    Templates are looked up in the template directory first, then the layout
    directory. Templates extend ``{{ layout }}`` (``main.html`` by default).
    """
    search_path = [path for path in (template_dir, layout_dir) if path]
    if not search_path:
        return None

    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(search_path),
        autoescape=jinja2.select_autoescape(["html", "xml"]),
    )
    env.globals["layout"] = DEFAULT_LAYOUT
    app[JINJA_ENV_KEY] = env
    return env


def render_template(
    request: web.Request,
    template_name: str,
    context: Optional[Mapping[str, Any]] = None,
    *,
    status: int = 200,
) -> web.Response:
    env = request.app.get(JINJA_ENV_KEY)
    if env is None:
        raise RuntimeError("No template directories were configured")

    request_context = get_request_context(request)
    template = env.get_template(template_name)
    body = template.render(
        request=request,
        session=request_context.session if request_context else None,
        **(context or {}),
    )
    return web.Response(text=body, status=status, content_type="text/html")
