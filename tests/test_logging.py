import logging
import sys

import orjson
import pytest

from karatapp.utils.logging import JsonFormatter, resolve_level, setup_logging


@pytest.mark.parametrize(
    ("level", "env", "expected"),
    [
        (logging.DEBUG, None, logging.DEBUG),
        ("warning", None, logging.WARNING),
        (None, "error", logging.ERROR),
        (None, None, logging.INFO),
        ("verbose", None, logging.INFO),
    ],
)
def test_resolve_level(monkeypatch, level, env, expected):
    if env is None:
        monkeypatch.delenv("LOG_LEVEL", raising=False)
    else:
        monkeypatch.setenv("LOG_LEVEL", env)

    assert resolve_level(level) == expected


def test_json_formatter():
    try:
        raise RuntimeError("kaboom")
    except RuntimeError:
        record = logging.LogRecord("forum", logging.ERROR, __file__, 12, "Post %d failed", (7,), sys.exc_info())

    entry = orjson.loads(JsonFormatter().format(record))

    assert entry["logger"] == "forum"
    assert entry["level"] == "ERROR"
    assert entry["line"] == 12
    assert entry["message"] == "Post 7 failed"
    assert "RuntimeError: kaboom" in entry["exception"]


def test_setup_logging_installs_single_handler(monkeypatch):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    monkeypatch.setenv("LOG_FORMAT", "json")
    try:
        setup_logging("debug")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
