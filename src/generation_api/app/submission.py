"""Task submission: persist the user message, create a task, dispatch a worker."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .coordination import TaskRegistry
from .dispatcher import TaskDispatcher
from .errors import (
    ConversationNotFoundError,
    CoordinationUnavailableError,
    InvalidTransitionError,
    SubmissionInProgressError,
)
from .messages import MessageStore
from .models import SubmitResult, Task
from .prompts import PromptBuilder
from .worker import GenerationWorker

logger = logging.getLogger(__name__)


class SubmissionService:
    """Accepts a user message and returns before generation starts.

    At most one task per conversation is queued/processing at a time: a
    submission that finds an active task returns that task's handle instead of
    creating a second one, and never appends the duplicate message. A handle is
    only returned for a task that exists.
    """

    def __init__(
        self,
        *,
        registry: TaskRegistry,
        message_store: MessageStore,
        dispatcher: TaskDispatcher,
        worker: GenerationWorker,
        prompt_builder: PromptBuilder,
        guard_wait_s: float = 1.0,
        guard_poll_interval_s: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.message_store = message_store
        self.dispatcher = dispatcher
        self.worker = worker
        self.prompt_builder = prompt_builder
        self.guard_wait_s = max(0.0, guard_wait_s)
        self.guard_poll_interval_s = guard_poll_interval_s
        self._clock = clock
        self._sleep = sleep

    def submit(self, conversation_id: str, content: str) -> SubmitResult:
        if not content or not content.strip():
            raise ValueError("content must not be empty")
        if not self.message_store.conversation_exists(conversation_id):
            raise ConversationNotFoundError(conversation_id)

        active = self._active_task(conversation_id)
        if active is not None:
            return self._duplicate(active)

        if not self.registry.acquire_guard(conversation_id):
            # Another submission is between its checks and its task write.
            return self._wait_for_guard_holder(conversation_id)

        try:
            active = self._active_task(conversation_id)
            if active is not None:
                return self._duplicate(active)
            return self._create_and_dispatch(conversation_id, content)
        finally:
            self._release_guard(conversation_id)

    def _wait_for_guard_holder(self, conversation_id: str) -> SubmitResult:
        """Return the guard holder's task once it exists, or refuse the submit.

        The holder may have failed its durable append or died, so a missing task
        is never reported as accepted.
        """
        deadline = self._clock() + self.guard_wait_s
        while True:
            active = self._active_task(conversation_id)
            if active is not None:
                return self._duplicate(active)
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(self.guard_poll_interval_s, remaining))
        logger.info(
            "submit event=rejected conversation_id=%s reason=guard_held_without_task",
            conversation_id,
        )
        raise SubmissionInProgressError(conversation_id)

    def _create_and_dispatch(self, conversation_id: str, content: str) -> SubmitResult:
        # 1) Durable append first: no task may exist without its user message.
        user_message = self.message_store.append_message(conversation_id, "user", content)
        request = self.prompt_builder.build(conversation_id, content)

        # 2) Coordination write; on failure the user message stays persisted.
        try:
            self.registry.create(conversation_id)
        except InvalidTransitionError:
            # The guard expired during the append and another submit won.
            active = self._active_task(conversation_id)
            logger.warning(
                "submit event=lost_race conversation_id=%s message_id=%s",
                conversation_id,
                user_message.message_id,
            )
            if active is None:
                raise SubmissionInProgressError(conversation_id) from None
            return self._duplicate(active)

        # 3) Hand off without waiting for generation.
        try:
            self.dispatcher.dispatch(self.worker.run, conversation_id, request)
        except RuntimeError:
            self.registry.discard(conversation_id)
            raise
        logger.info(
            "submit event=accepted conversation_id=%s message_id=%s status=%s",
            conversation_id,
            user_message.message_id,
            "queued",
        )
        return SubmitResult(task_id=conversation_id, status="queued")

    def _active_task(self, conversation_id: str) -> Task | None:
        task = self.registry.get(conversation_id)
        if task is not None and task.is_active:
            return task
        return None

    @staticmethod
    def _duplicate(task: Task) -> SubmitResult:
        logger.info(
            "submit event=duplicate conversation_id=%s status=%s", task.task_id, task.status
        )
        return SubmitResult(task_id=task.task_id, status=task.status, duplicate=True)

    def _release_guard(self, conversation_id: str) -> None:
        try:
            self.registry.release_guard(conversation_id)
        except CoordinationUnavailableError as exc:
            # The guard expires on its own TTL.
            logger.warning(
                "submit event=guard_release_failed conversation_id=%s error=%s",
                conversation_id,
                exc,
            )
