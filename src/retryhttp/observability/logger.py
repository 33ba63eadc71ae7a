"""JSON-lines logging for retryhttp.

Retry decisions are logged as one JSON object per line.  The coordinator
logs through a :class:`RetryLogAdapter` bound to the failing request, so
every line about one attempt carries the same context::

    {"method": "GET", "url": "example.com/test", "retry_count": 1,
     "retries": 3, "error_code": "CONNECT_ERROR", "delay_ms": 200.0,
     "ts": "2025-07-01T12:00:00.123+00:00", "level": "INFO",
     "logger": "retryhttp.coordinator", "message": "Retrying request"}

Loggers start at ``WARNING``.  To see granted retries as well::

    get_logger("retryhttp.coordinator").setLevel(logging.INFO)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, MutableMapping
from datetime import datetime, timezone
from typing import Any, TextIO


class StructuredFormatter(logging.Formatter):
    """Render a record as a single-line JSON object.

    Fields passed as ``extra={"extra_fields": {...}}`` become top-level
    keys.  ``ts``, ``level``, ``logger`` and ``message`` are always present
    and cannot be shadowed by them.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = dict(getattr(record, "extra_fields", None) or {})
        payload["ts"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat(
            timespec="milliseconds"
        )
        payload["level"] = record.levelname
        payload["logger"] = record.name
        payload["message"] = record.getMessage()
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class RetryLogAdapter(logging.LoggerAdapter):
    """Logger bound to the context of one failed attempt.

    The bound context is merged with the ``fields`` keyword of each call::

        RetryLogAdapter(log, {"method": "GET"}).info("Retrying request", fields={"delay_ms": 0})
    """

    def __init__(self, logger: logging.Logger, context: Mapping[str, Any]) -> None:
        super().__init__(logger, dict(context))

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        fields = {**self.extra, **kwargs.pop("fields", {})}
        kwargs["extra"] = {"extra_fields": fields}
        return msg, kwargs


def get_logger(
    name: str = "retryhttp",
    *,
    level: int | str = logging.WARNING,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Return logger *name* with a :class:`StructuredFormatter` handler.

    The handler (writing to *stream*, default ``sys.stderr``) and *level*
    are set up on the first call for a name only; later calls return the
    logger untouched.  Records do not propagate to the root logger.
    """
    logger = logging.getLogger(name)
    if any(isinstance(h.formatter, StructuredFormatter) for h in logger.handlers):
        return logger
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    logger.propagate = False
    return logger
