"""Process-wide logging setup.

Call setup_logging() once at startup. LOG_LEVEL picks the level (default
INFO) and LOG_FORMAT picks ``text`` (default) or ``json``, one object per
line for log collectors.
"""

from __future__ import annotations

import logging
import os
import sys

import orjson

_NOISY_LOGGERS = ("aiohttp.access", "asyncio", "sqlalchemy.engine")
_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d | %(message)s"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(entry).decode("utf-8")


def resolve_level(level: int | str | None = None) -> int:
    """Level number for ``level``, LOG_LEVEL when None; unknown names mean INFO."""
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    return logging.getLevelNamesMapping().get(name, logging.INFO)


def setup_logging(level: int | str | None = None, *, json_output: bool | None = None) -> None:
    """Replace the root handlers with a single stderr handler.

    Args:
        level: int or level name; see ``resolve_level``.
        json_output: force JSON lines on or off instead of reading LOG_FORMAT.
    """
    resolved_level = resolve_level(level)
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "text").lower() == "json"

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(resolved_level)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%m-%d %H:%M:%S"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(resolved_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))
