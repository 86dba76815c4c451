"""Generation worker: runs one task from queued to a terminal state.

Beginner terms used in this file:
- Worker boundary: the point where every exception from the generation call
  is caught and turned into a `failed` task instead of propagating.
- Sanitized error: a fixed message stored for clients; the provider's raw
  error text is only logged.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .coordination import TaskRegistry
from .errors import (
    ConversationNotFoundError,
    CoordinationUnavailableError,
    GenerationError,
    InvalidTransitionError,
    MessageStoreError,
)
from .llm import TextGenerator
from .messages import MessageStore
from .models import GenerationRequest, MessageRecord

logger = logging.getLogger(__name__)

SANITIZED_GENERATION_ERROR = "generation failed"


class GenerationWorker:
    """Owns a task's coordination keys for the duration of one generation run."""

    def __init__(
        self,
        *,
        registry: TaskRegistry,
        message_store: MessageStore,
        generator: TextGenerator,
        max_tokens: int = 1024,
        timeout_s: float = 30.0,
        max_content_chars: int = 8000,
        persist_max_retries: int = 3,
        persist_backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.message_store = message_store
        self.generator = generator
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s
        self.max_content_chars = max_content_chars
        self.persist_max_retries = max(0, persist_max_retries)
        self.persist_backoff_s = max(0.0, persist_backoff_s)
        self._sleep = sleep

    def run(self, task_id: str, request: GenerationRequest) -> None:
        """Process one dispatched task. Never raises for expected failures."""
        if not self._start(task_id):
            return

        started_at = time.perf_counter()
        try:
            text = self.generator.generate(
                system_prompt=request.system_prompt,
                history=request.history,
                user_message=request.user_message,
                max_tokens=self.max_tokens,
                timeout_s=self.timeout_s,
            )
            content = self._normalize(text)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "task event=generation_failed task_id=%s error_type=%s error=%s duration_ms=%.1f",
                task_id,
                type(exc).__name__,
                exc,
                _duration_ms(started_at),
            )
            self._finish(task_id, "failed", error=SANITIZED_GENERATION_ERROR)
            return

        logger.info(
            "task event=generation_succeeded task_id=%s chars=%d duration_ms=%.1f",
            task_id,
            len(content),
            _duration_ms(started_at),
        )
        # Pollers see the result first; the durable append follows and is
        # retried on its own, independent of the task's coordination state.
        self._finish(task_id, "completed", content=content)
        self._persist(task_id, content)

    def _start(self, task_id: str) -> bool:
        try:
            task = self.registry.get(task_id)
            if task is None or task.status != "queued":
                logger.info(
                    "task event=skip task_id=%s reason=not_queued status=%s",
                    task_id,
                    task.status if task else None,
                )
                return False
            if not self.registry.claim(task_id):
                logger.info("task event=skip task_id=%s reason=already_claimed", task_id)
                return False
        except CoordinationUnavailableError as exc:
            logger.error("task event=start_failed task_id=%s error=%s", task_id, exc)
            return False

        try:
            self.registry.transition(task_id, "processing")
        except (CoordinationUnavailableError, InvalidTransitionError) as exc:
            logger.error("task event=start_failed task_id=%s error=%s", task_id, exc)
            self._release(task_id)
            return False
        return True

    def _release(self, task_id: str) -> None:
        # A claimed task that never reached processing would block the
        # conversation until its TTL; drop its keys so a resubmit can go through.
        try:
            self.registry.discard(task_id)
        except CoordinationUnavailableError as exc:
            logger.error("task event=release_failed task_id=%s error=%s", task_id, exc)

    def _normalize(self, text: str) -> str:
        if not isinstance(text, str) or not text.strip():
            raise GenerationError("generator returned empty output")
        return text.strip()[: self.max_content_chars]

    def _finish(
        self,
        task_id: str,
        status: str,
        *,
        content: str | None = None,
        error: str | None = None,
    ) -> None:
        try:
            self.registry.transition(task_id, status, content=content, error=error)
        except (CoordinationUnavailableError, InvalidTransitionError) as exc:
            # Pollers fall back to the durable store once this key expires.
            logger.error(
                "task event=finish_failed task_id=%s status=%s error=%s",
                task_id,
                status,
                exc,
            )

    def _persist(self, task_id: str, content: str) -> MessageRecord | None:
        attempts = self.persist_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                record = self.message_store.append_message(task_id, "assistant", content)
            except ConversationNotFoundError:
                logger.error(
                    "task event=persist_alert task_id=%s reason=conversation_missing", task_id
                )
                return None
            except MessageStoreError as exc:
                logger.warning(
                    "task event=persist_retry task_id=%s attempt=%d/%d error=%s",
                    task_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts and self.persist_backoff_s > 0:
                    self._sleep(self.persist_backoff_s * attempt)
                continue
            logger.info(
                "task event=persisted task_id=%s message_id=%s", task_id, record.message_id
            )
            return record

        logger.error(
            "task event=persist_alert task_id=%s reason=retries_exhausted attempts=%d chars=%d",
            task_id,
            attempts,
            len(content),
        )
        return None


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000, 2)
