"""Background dispatch of generation work, decoupled from HTTP requests."""

from __future__ import annotations

import contextvars
import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class TaskDispatcher(Protocol):
    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None: ...

    def shutdown(self, wait: bool = True) -> None: ...


class ThreadPoolDispatcher:
    """Runs dispatched callables on a bounded pool of worker threads.

    The caller's context variables (correlation id) are copied into the worker
    so background logs can be joined with the request that caused them.
    """

    def __init__(self, *, max_workers: int = 4) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="generation")

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        ctx = contextvars.copy_context()
        future = self._pool.submit(ctx.run, fn, *args)
        future.add_done_callback(_log_unhandled)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def _log_unhandled(future: Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(
            "dispatch event=unhandled_error error_type=%s error=%s",
            type(exc).__name__,
            exc,
            exc_info=exc,
        )
