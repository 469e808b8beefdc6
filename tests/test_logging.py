import json
import logging

import pytest
from rich.logging import RichHandler

from bulwark.logging_config import (
    BulwarkJsonFormatter,
    ContextLogger,
    SingleLineExtrasFilter,
    bind_logger,
    configure_logging,
    get_loggers,
)

from conftest import TEST_LOGGER_NAME, records_for


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    names = [logger.name for logger in get_loggers()] + ["aiohttp", "redis", "asyncio"]
    saved_levels = {name: logging.getLogger(name).level for name in names}
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    for name, level in saved_levels.items():
        logging.getLogger(name).setLevel(level)


def test_child_logger_merges_fields(test_logger, caplog):
    log = ContextLogger(test_logger, {"context": "HTTP"})
    child = log.child(request_id="abc")

    child.info("handled", extra={"status": 200})

    record = records_for(caplog, logging.INFO)[0]
    assert record.context == "HTTP"
    assert record.request_id == "abc"
    assert record.status == 200
    assert log.fields == {"context": "HTTP"}
    assert child.fields == {"context": "HTTP", "request_id": "abc"}


def test_call_extras_win_over_bound_fields(test_logger, caplog):
    ContextLogger(test_logger, {"context": "HTTP"}).warning("x", extra={"context": "CSP"})

    assert records_for(caplog, logging.WARNING)[0].context == "CSP"


def test_bind_logger_sets_context(test_logger):
    log = bind_logger(test_logger, "API")

    assert log.logger is test_logger
    assert log.fields == {"context": "API"}
    assert bind_logger(test_logger).fields == {"context": "HTTP"}


def test_bind_logger_keeps_adapter_fields(test_logger):
    adapter = logging.LoggerAdapter(test_logger, {"service": "billing"})

    log = bind_logger(adapter, "HTTP-TEST")

    assert log.logger is test_logger
    assert log.fields == {"service": "billing", "context": "HTTP-TEST"}


def test_bind_logger_without_logger_warns(capsys):
    log = bind_logger(None)

    assert log.logger is get_loggers()[0]
    assert "No logger was passed" in capsys.readouterr().err


def test_single_line_extras_filter():
    logger = logging.getLogger(TEST_LOGGER_NAME)
    record = logger.makeRecord(
        TEST_LOGGER_NAME,
        logging.INFO,
        __file__,
        1,
        "request %s",
        ("GET /",),
        None,
        extra={"request_id": "abc", "context": "HTTP"},
    )

    assert SingleLineExtrasFilter().filter(record)
    assert record.getMessage() == "request GET / | request_id=abc context=HTTP"
    assert not hasattr(record, "request_id")


def test_json_formatter_fields():
    logger = logging.getLogger(TEST_LOGGER_NAME)
    record = logger.makeRecord(
        TEST_LOGGER_NAME, logging.ERROR, __file__, 1, "failed", (), None,
        extra={"request_id": "abc"},
    )

    payload = json.loads(BulwarkJsonFormatter("%(levelname)s %(name)s %(message)s").format(record))

    assert payload["severity"] == "ERROR"
    assert payload["logger"] == TEST_LOGGER_NAME
    assert payload["message"] == "failed"
    assert payload["request_id"] == "abc"
    assert payload["timestamp"].endswith("Z")


@pytest.mark.usefixtures("restore_logging")
def test_configure_logging_json():
    app_logger, access_logger = configure_logging("DEBUG", "json")

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, BulwarkJsonFormatter)
    assert app_logger.level == logging.DEBUG
    assert access_logger.level == logging.DEBUG
    assert logging.getLogger("aiohttp").level == logging.INFO


@pytest.mark.usefixtures("restore_logging")
def test_configure_logging_rich():
    app_logger, _ = configure_logging("warning")

    handler = logging.getLogger().handlers[0]
    assert isinstance(handler, RichHandler)
    assert any(isinstance(f, SingleLineExtrasFilter) for f in handler.filters)
    assert app_logger.level == logging.WARNING
    assert logging.getLogger("redis").level == logging.WARNING
