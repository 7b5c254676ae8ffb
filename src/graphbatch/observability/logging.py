"""Structured logging for graphbatch.

graphbatch logs through ``logging.getLogger(__name__)`` and attaches
machine-readable fields to its records with ``extra=``:

* ``batch_id``, ``entry_count``: batch lifecycle and failures
* ``attempt``, ``max_attempts``, ``delay_seconds``: server rate-limit retries
* ``delay_seconds``, ``retry_after_seconds``: client-side limiter delays
  and refusals
* ``hook``: the hook method that raised

:func:`configure_logging` installs a handler on the ``graphbatch`` logger
that renders these fields as JSON (or ``key=value`` pairs), together with
any fields bound by :class:`BatchLogContext`.

Usage::

    configure_logging("INFO")

    with BatchLogContext(job="nightly-report"):
        await asyncio.gather(*(client.query(q) for q in queries))
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, TYPE_CHECKING, Any

if TYPE_CHECKING:
    from types import TracebackType

RECORD_FIELDS = (
    "batch_id",
    "entry_count",
    "attempt",
    "max_attempts",
    "delay_seconds",
    "retry_after_seconds",
    "hook",
)

_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "graphbatch_log_context", default={}
)


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = dict(getattr(record, "context", {}))
    for name in RECORD_FIELDS:
        if hasattr(record, name):
            fields[name] = getattr(record, name)
    return fields


class ContextFilter(logging.Filter):
    """Copies the fields bound by :class:`BatchLogContext` onto ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = _context.get()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message and graphbatch fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_fields(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain-text records with the graphbatch fields appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = " ".join(f"{key}={value}" for key, value in _fields(record).items())
        return f"{line} {pairs}" if pairs else line


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    stream: IO[str] | None = None,
    include_http: bool = False,
) -> logging.Handler:
    """Send graphbatch's records to *stream* (stdout by default).

    Replaces any handler installed by an earlier call and returns the new
    one.  Unless *include_http* is set, ``httpx`` and ``httpcore`` are
    limited to warnings.
    """
    logger = logging.getLogger("graphbatch")
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)
    for handler in logger.handlers[:]:
        if getattr(handler, "_graphbatch", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler._graphbatch = True  # type: ignore[attr-defined]
    handler.setLevel(level)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else KeyValueFormatter())
    logger.addHandler(handler)

    if not include_http:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    return handler


class BatchLogContext:
    """Binds fields to every graphbatch record logged inside the block.

    The fields live in a :mod:`contextvars` variable, so they follow the
    tasks started inside the block (including the flush tasks of batches
    opened there) and do not leak into concurrent tasks.
    """

    def __init__(self, **context: Any) -> None:
        self._context = context
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> BatchLogContext:
        self._token = _context.set({**_context.get(), **self._context})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None
