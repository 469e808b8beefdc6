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

import asyncio
import signal
import sys

from aiohttp import web

from bulwark.config import ServerConfig
from bulwark.logging_config import configure_logging
from bulwark.server.errors import PortBindError
from bulwark.server.web_resource import Bulwark


async def handle_health_check(request: web.Request) -> web.Response:
    return web.Response(text="OK")


async def main() -> int:
    """Main entry point for the application."""
    # Create a shutdown event
    shutdown_event = asyncio.Event()

    # Get the current loop
    loop = asyncio.get_running_loop()

    # Load configuration
    config = ServerConfig(_cli_parse_args=True)
    app_logger, _ = configure_logging(config.log_level, config.log_format)
    config = config.model_copy(update={"logger": app_logger})

    def _signal_handler():
        app_logger.info("Shutdown signal received, initiating graceful shutdown.")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    app_logger.info(
        "Starting application with key configurations",
        extra={
            "port": config.port,
            "sessions_enabled": config.sessions_enabled,
            "content_security": config.content_security,
            "log_level": config.log_level,
        },
    )

    server = Bulwark(config)
    server.router.router.add_get("/_health_check", handle_health_check)

    try:
        await server.start()
    except PortBindError as e:
        app_logger.error(f"Could not start server: {e}")
        await server.stop()
        return 1

    # Wait for the shutdown event
    await shutdown_event.wait()
    app_logger.info("Shutdown event received, server is stopping.")
    await server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
