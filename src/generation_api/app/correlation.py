"""Correlation ids for joining request logs with background worker logs.

Beginner terms:
- Correlation id: an opaque string attached to every log line caused by one
  client request, including lines written later by a background worker.
- ContextVar: a variable whose value is local to the current thread/task.
- Middleware: code that wraps every HTTP request before the route runs.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

from fastapi import Request, Response

CORRELATION_HEADER = "X-Correlation-ID"

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")


def get_correlation_id() -> str:
    return _correlation_id.get()


def set_correlation_id(value: str) -> None:
    _correlation_id.set(value)


class CorrelationIdFilter(logging.Filter):
    """Adds `correlation_id` to every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


async def correlation_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    incoming = request.headers.get(CORRELATION_HEADER, "").strip()
    # Keep caller-provided ids short enough to be safe in log lines.
    correlation_id = incoming[:128] if incoming else str(uuid.uuid4())
    token = _correlation_id.set(correlation_id)
    try:
        response = await call_next(request)
    finally:
        _correlation_id.reset(token)
    response.headers[CORRELATION_HEADER] = correlation_id
    return response


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler whose format includes the correlation id."""
    root = logging.getLogger()
    if any(isinstance(f, CorrelationIdFilter) for h in root.handlers for f in h.filters):
        return
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s correlation_id=%(correlation_id)s %(message)s"
        )
    )
    root.addHandler(handler)
    root.setLevel(level.upper())
