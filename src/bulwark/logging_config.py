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
Logging setup and the context-scoped logger adapter.

Every component logs through a ``ContextLogger`` derived from a single
externally supplied ``logging.Logger``. ``child()`` returns a new adapter with
extra bound fields, so a request logger carries both the component context and
the request id on every record.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, MutableMapping, Optional, Union

from pythonjsonlogger.json import JsonFormatter
from rich.console import Console
from rich.logging import RichHandler

DEFAULT_CONTEXT = "HTTP"


def get_loggers():
    """Returns the standard loggers for the application."""
    return (
        logging.getLogger("bulwark_app"),
        logging.getLogger("http_access"),
    )


class ContextLogger(logging.LoggerAdapter):
    """
    A LoggerAdapter that merges its bound fields into each record's extras.

    Fields passed per call through ``extra=`` win over bound fields.
    """

    def __init__(
        self, logger: logging.Logger, extra: Optional[Mapping[str, Any]] = None
    ):
        super().__init__(logger, dict(extra or {}))

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        merged = dict(self.extra)
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs

    def child(self, **fields: Any) -> "ContextLogger":
        """Return a new adapter bound to this adapter's fields plus ``fields``."""
        return ContextLogger(self.logger, {**self.extra, **fields})

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self.extra)


def bind_logger(
    logger: Union[logging.Logger, logging.LoggerAdapter, None],
    context: Optional[str] = None,
) -> ContextLogger:
    """
    Wrap the externally supplied logger in a ContextLogger scoped to ``context``.

    A missing logger is not fatal: a warning goes to stderr and the package
    application logger is used instead. Fields bound on an adapter are kept.
    """
    fields: dict[str, Any] = {}
    if logger is None:
        Console(stderr=True).print(
            "[bulwark] No logger was passed to bulwark, using the default "
            "application logger.",
            style="bold red",
            markup=False,
        )
        logger = get_loggers()[0]
    elif isinstance(logger, logging.LoggerAdapter):
        fields.update(logger.extra or {})
        logger = logger.logger
    fields["context"] = context or DEFAULT_CONTEXT
    return ContextLogger(logger, fields)


# Define standard keys to separate them from user-provided 'extra' fields
_STANDARD_LOG_RECORD_KEYS = set(
    logging.LogRecord(
        "dummy", logging.INFO, "dummy.py", 0, "dummy", (), None
    ).__dict__.keys()
) | {"message", "asctime", "taskName"}


class SingleLineExtrasFilter(logging.Filter):
    """
    A logging filter to format extra parameters into a single line.

    This filter iterates over the 'extra' parameters in a LogRecord,
    formats them as key=value pairs, and appends them to the log message.
    It then removes these keys from the record to prevent RichHandler
    from printing them on separate lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        extra = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _STANDARD_LOG_RECORD_KEYS
        }

        if extra:
            record.msg = f"{record.getMessage()} | " + " ".join(
                f"{k}={v}" for k, v in extra.items()
            )
            record.args = ()
            for key in extra:
                del record.__dict__[key]

        return True


class BulwarkJsonFormatter(JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%S.%fZ"
            )
        if log_record.get("levelname"):
            log_record["severity"] = log_record["levelname"].upper()
            del log_record["levelname"]
        else:
            log_record["severity"] = record.levelname
        if not log_record.get("logger"):
            log_record["logger"] = record.name


def configure_logging(log_level: str = "INFO", log_format: str = "rich"):
    """Configure all loggers with the specified log level and consistent formatting."""
    log_level_upper = log_level.upper()

    # 1. Determine log levels for app and dependencies
    if log_level_upper == "DEBUG":
        app_log_level = logging.DEBUG
        deps_log_level = logging.INFO
    else:
        app_log_level = getattr(logging, log_level_upper, logging.INFO)
        deps_log_level = logging.WARNING

    # 2. Clear root handlers and reset propagation of our own loggers
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    app_logger, access_logger = get_loggers()
    for logger_instance in (app_logger, access_logger):
        logger_instance.handlers.clear()
        logger_instance.propagate = True
        logger_instance.setLevel(app_log_level)

    # 3. Configure the root logger with a single handler
    root_logger.setLevel(min(app_log_level, deps_log_level))
    if log_format == "json":
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(
            BulwarkJsonFormatter("%(levelname)s %(name)s %(message)s")
        )
    else:
        handler = RichHandler(
            rich_tracebacks=True,
            show_path=True,
            show_time=True,
            markup=False,
            show_level=True,
        )
        handler.addFilter(SingleLineExtrasFilter())
    root_logger.addHandler(handler)

    # 4. Quiet noisy third-party libraries
    for dep_name in ("aiohttp", "redis", "asyncio"):
        logging.getLogger(dep_name).setLevel(deps_log_level)

    app_logger.info(
        f"Logging configured. App level: {logging.getLevelName(app_log_level)}, "
        f"Dependency level: {logging.getLevelName(deps_log_level)}, "
        f"format: {log_format}"
    )
    return app_logger, access_logger
