"""Exception types raised across the generation pipeline.

Backends translate driver errors (redis, psycopg) into these types so the
service layer and HTTP routes never depend on a specific client library.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConversationNotFoundError(PipelineError):
    """Conversation id does not reference an existing conversation."""


class CoordinationUnavailableError(PipelineError):
    """Coordination store could not be reached."""


class MessageStoreError(PipelineError):
    """Durable message store rejected or failed a read/write."""


class InvalidTransitionError(PipelineError):
    """Task status change that the state machine does not allow."""

    def __init__(self, task_id: str, current: str | None, target: str) -> None:
        super().__init__(f"Task {task_id} cannot move from {current!r} to {target!r}")
        self.task_id = task_id
        self.current = current
        self.target = target


class GenerationError(PipelineError):
    """Generation capability failed or returned unusable output."""


class SubmissionInProgressError(PipelineError):
    """Another submission holds the conversation's guard but has no task yet."""
