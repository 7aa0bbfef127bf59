"""Logging for courier: one ``courier`` logger tree on stderr, text or JSON lines.

Run-scoped messages carry the collection, iteration and request they belong
to; ``bind_run_context`` attaches those to every record a caller emits so
both formatters can render them without string-formatting them into the
message.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

LOG_LEVEL_ENV = "COURIER_LOG_LEVEL"
LOG_FORMAT_ENV = "COURIER_LOG_FORMAT"  # "json" | "text" (default)

DEFAULT_LEVEL = "WARNING"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

RUN_CONTEXT_FIELDS = ("collection", "iteration", "request")


def get_logger(name: str) -> logging.Logger:
    """Return ``courier.<name>``; the first call installs the stderr handler."""
    root = logging.getLogger("courier")
    if not root.handlers:
        root.setLevel(_level_from_env())
        root.addHandler(_make_handler())
    return root if name == "courier" else root.getChild(name)


def bind_run_context(logger: logging.Logger, **context: Any) -> logging.LoggerAdapter:
    """Wrap ``logger`` so each record carries the given run fields (``None`` values are dropped)."""
    extra = {k: v for k, v in context.items() if k in RUN_CONTEXT_FIELDS and v is not None}
    return logging.LoggerAdapter(logger, extra)


def run_context(record: logging.LogRecord) -> dict[str, Any]:
    return {f: getattr(record, f) for f in RUN_CONTEXT_FIELDS if getattr(record, f, None) is not None}


def _level_from_env() -> int:
    name = (os.environ.get(LOG_LEVEL_ENV) or DEFAULT_LEVEL).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def _make_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if (os.environ.get(LOG_FORMAT_ENV) or "text").lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(_TextFormatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))
    return handler


class _TextFormatter(logging.Formatter):
    """Appends ``[collection=... iteration=... request=...]`` when a record has run context."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = run_context(record)
        if not ctx:
            return line
        fields = " ".join(f"{k}={v}" for k, v in ctx.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{fields}]{sep}{tail}"


class _JsonFormatter(logging.Formatter):
    """One JSON object per line for CI log collectors."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        obj.update(run_context(record))
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj, default=str).decode("utf-8")
