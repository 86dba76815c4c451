"""Pydantic models shared across API, coordination store, worker, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Terminal status: a task status that never changes again (completed/failed).
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Task lifecycle states written to the coordination store.
TaskStatus = Literal["queued", "processing", "completed", "failed"]
# Poll responses add "unknown" for tasks that cannot be found or reconciled.
PollStatus = Literal["queued", "processing", "completed", "failed", "unknown"]
PollSource = Literal["coordination-store", "durable-store-fallback"]
MessageRole = Literal["user", "assistant"]

ACTIVE_STATUSES: frozenset[str] = frozenset({"queued", "processing"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class Task(BaseModel):
    """One in-flight or completed generation request for a conversation."""

    # Equal to the owning conversation id: one task slot per conversation.
    task_id: str
    status: TaskStatus = "queued"
    content: str = ""
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class MessageRecord(BaseModel):
    """Durable conversation message row."""

    message_id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime


class GenerationRequest(BaseModel):
    """Prompt material handed to the generation capability."""

    system_prompt: str
    # Prior turns, oldest first, as {"role": ..., "content": ...} pairs.
    history: list[dict[str, str]] = Field(default_factory=list)
    user_message: str


class SubmitResult(BaseModel):
    """Handle returned by the submission service."""

    task_id: str
    status: TaskStatus
    # True when an already active task was returned instead of a new one.
    duplicate: bool = False


class PollResult(BaseModel):
    """Projection of a task for one poll response."""

    task_id: str
    status: PollStatus
    content: str | None = None
    error: str | None = None
    source: PollSource | None = None

    @property
    def should_keep_polling(self) -> bool:
        return self.status in ACTIVE_STATUSES


class CreateConversationRequest(BaseModel):
    """Request body for POST /conversations."""

    title: str = Field(default="", max_length=200)


class CreateConversationResponse(BaseModel):
    """Response body for POST /conversations."""

    conversation_id: str


class SendMessageRequest(BaseModel):
    """Request body for POST /conversations/{id}/messages."""

    # min_length enforces non-empty message text at API boundary.
    content: str = Field(min_length=1)

    @field_validator("content")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value
