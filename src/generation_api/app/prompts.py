"""Prompt assembly for one generation request."""

from __future__ import annotations

from .messages import MessageStore
from .models import GenerationRequest


class PromptBuilder:
    """Builds the system prompt and prior-turn history for a conversation."""

    def __init__(
        self, *, message_store: MessageStore, system_prompt: str, history_limit: int
    ) -> None:
        self.message_store = message_store
        self.system_prompt = system_prompt
        self.history_limit = history_limit

    def build(self, conversation_id: str, user_message: str) -> GenerationRequest:
        # +1 because the newest stored row is the user message being answered.
        recent = self.message_store.recent_messages(conversation_id, self.history_limit + 1)
        if recent and recent[-1].role == "user" and recent[-1].content == user_message:
            recent = recent[:-1]
        if self.history_limit:
            recent = recent[-self.history_limit :]
        else:
            recent = []
        history = [{"role": record.role, "content": record.content} for record in recent]
        return GenerationRequest(
            system_prompt=self.system_prompt,
            history=history,
            user_message=user_message,
        )
