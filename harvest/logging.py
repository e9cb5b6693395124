"""Logging configuration for harvest runs."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _render_value(value: Any) -> str:
    if isinstance(value, str) and value and not any(ch.isspace() for ch in value):
        return value
    return json.dumps(value, default=str, sort_keys=True)


class EventFormatter(logging.Formatter):
    """Append the ``extra`` fields of a record as ``key=value`` pairs.

    Structured events such as ``harvest.fetch.failed`` carry their details
    (``feed_id``, ``reason``, ``kind`` ...) as record attributes; without this
    formatter only the event name would reach the log output. The ``event``
    field is dropped when it just repeats the message.
    """

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        pairs: list[str] = []
        for name, value in record.__dict__.items():
            if name in _RECORD_ATTRIBUTES or name.startswith("_"):
                continue
            if name == "event" and value == record.getMessage():
                continue
            pairs.append(f"{name}={_render_value(value)}")
        if not pairs:
            return line
        return f"{line} | {' '.join(pairs)}"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure process wide logging handlers.

    Raises :class:`OSError` when ``log_file`` cannot be opened; the root logger
    is left untouched in that case.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    formatter = EventFormatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO; per-feed events already cover that.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
