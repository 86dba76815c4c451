from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from generation_api.app.coordination import InMemoryCoordinationStore, TaskRegistry
from generation_api.app.messages import InMemoryMessageStore
from generation_api.app.settings import Settings


class FakeGenerator:
    """Test double for the generation capability."""

    def __init__(self, reply: str = "Once upon a different time...") -> None:
        self.reply = reply
        self.error: Exception | None = None
        self.calls: list[dict[str, Any]] = []

    def generate(
        self,
        *,
        system_prompt: str,
        history: list[dict[str, str]],
        user_message: str,
        max_tokens: int,
        timeout_s: float,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "history": history,
                "user_message": user_message,
                "max_tokens": max_tokens,
                "timeout_s": timeout_s,
            }
        )
        if self.error is not None:
            raise self.error
        return self.reply


class RecordingDispatcher:
    """Holds dispatched work until the test runs it explicitly."""

    def __init__(self) -> None:
        self.pending: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []
        self.shutdown_called = False

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        self.pending.append((fn, args))

    def run_all(self) -> int:
        ran = 0
        while self.pending:
            fn, args = self.pending.pop(0)
            fn(*args)
            ran += 1
        return ran

    def shutdown(self, wait: bool = True) -> None:
        self.shutdown_called = True


@pytest.fixture
def settings() -> Settings:
    return Settings(
        coordination_backend="memory",
        message_store_backend="memory",
        poll_wait_s=0.2,
        poll_interval_s=0.05,
        persist_backoff_s=0.0,
        submit_guard_wait_s=0.1,
    )


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def coordination() -> InMemoryCoordinationStore:
    return InMemoryCoordinationStore()


@pytest.fixture
def registry(coordination: InMemoryCoordinationStore) -> TaskRegistry:
    return TaskRegistry(coordination, ttl_s=600, guard_ttl_s=30)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def client(
    settings: Settings,
    coordination: InMemoryCoordinationStore,
    message_store: InMemoryMessageStore,
    generator: FakeGenerator,
    dispatcher: RecordingDispatcher,
) -> TestClient:
    from generation_api.main import create_app

    app = create_app(
        settings_override=settings,
        coordination=coordination,
        message_store=message_store,
        generator=generator,
        dispatcher=dispatcher,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def conversation_id(message_store: InMemoryMessageStore) -> str:
    return message_store.create_conversation("What if the library never burned?")
