"""Long-poll retrieval of task state with durable-store reconciliation.

Beginner terms:
- Long-poll: the server holds a request open for a short, bounded window and
  answers as soon as something changes (or when the window runs out).
- Reconciliation: when the coordination store has nothing for a conversation,
  the durable message history decides whether the last task completed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .coordination import TaskRegistry
from .errors import CoordinationUnavailableError, MessageStoreError
from .messages import MessageStore
from .models import PollResult, Task

logger = logging.getLogger(__name__)


class PollService:
    def __init__(
        self,
        *,
        registry: TaskRegistry,
        message_store: MessageStore,
        wait_s: float = 2.0,
        interval_s: float = 0.25,
        fallback_lookback: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.message_store = message_store
        self.wait_s = max(0.0, wait_s)
        self.interval_s = interval_s
        self.fallback_lookback = fallback_lookback
        self._clock = clock
        self._sleep = sleep

    def poll(self, conversation_id: str) -> PollResult:
        task = self._read(conversation_id)
        if task is None:
            return self.reconcile(conversation_id)
        if task.is_terminal:
            return _project(task)

        # Bounded wait: return on the first status change or when the window ends.
        deadline = self._clock() + self.wait_s
        initial_status = task.status
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return _project(task)
            self._sleep(min(self.interval_s, remaining))
            current = self._read(conversation_id)
            if current is None:
                return self.reconcile(conversation_id)
            if current.status != initial_status:
                return _project(current)
            task = current

    def reconcile(self, conversation_id: str) -> PollResult:
        """Resolve a poll from durable history when no task state is available.

        The task counts as completed when the newest durable message is
        assistant-authored and not older than the last user message.
        """
        try:
            recent = self.message_store.recent_messages(conversation_id, self.fallback_lookback)
        except MessageStoreError as exc:
            logger.error(
                "poll event=fallback_failed conversation_id=%s error=%s", conversation_id, exc
            )
            return PollResult(task_id=conversation_id, status="unknown")

        if recent and recent[-1].role == "assistant":
            latest = recent[-1]
            last_user = next((m for m in reversed(recent) if m.role == "user"), None)
            if last_user is None or latest.created_at >= last_user.created_at:
                logger.info(
                    "poll event=fallback_completed conversation_id=%s message_id=%s",
                    conversation_id,
                    latest.message_id,
                )
                return PollResult(
                    task_id=conversation_id,
                    status="completed",
                    content=latest.content,
                    source="durable-store-fallback",
                )

        logger.info("poll event=fallback_unknown conversation_id=%s", conversation_id)
        return PollResult(task_id=conversation_id, status="unknown")

    def _read(self, conversation_id: str) -> Task | None:
        try:
            return self.registry.get(conversation_id)
        except CoordinationUnavailableError as exc:
            logger.warning(
                "poll event=coordination_unavailable conversation_id=%s error=%s",
                conversation_id,
                exc,
            )
            return None


def _project(task: Task) -> PollResult:
    return PollResult(
        task_id=task.task_id,
        status=task.status,
        content=task.content if task.status == "completed" else None,
        error=task.error if task.status == "failed" else None,
        source="coordination-store",
    )
