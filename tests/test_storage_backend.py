from __future__ import annotations

from typing import Any

import pytest

from generation_api.app.coordination import (
    InMemoryCoordinationStore,
    RedisCoordinationStore,
    build_coordination_store,
)
from generation_api.app.errors import ConversationNotFoundError, MessageStoreError
from generation_api.app.messages import (
    InMemoryMessageStore,
    PostgresMessageStore,
    build_message_store,
)


_CONVERSATION = "3f2b9c1e-8a4d-4c7e-9b1a-2d5e6f7a8b9c"


class _FakeDriverError(Exception):
    pass


class _FakePsycopg:
    Error = _FakeDriverError

    def __init__(self) -> None:
        self.fail = False
        self.executed: list[str] = []

    def connect(self, database_url: str, row_factory: Any = None) -> "_FakeConnection":
        if self.fail:
            raise _FakeDriverError("could not connect to server")
        return _FakeConnection(self)


class _FakeConnection:
    def __init__(self, driver: _FakePsycopg) -> None:
        self.driver = driver

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, *_: Any) -> None:
        return None

    def execute(self, sql: str, params: Any = None) -> "_FakeCursor":
        self.driver.executed.append(" ".join(sql.split()))
        return _FakeCursor()

    def commit(self) -> None:
        return None


class _FakeCursor:
    def fetchone(self) -> dict[str, Any] | None:
        return None

    def fetchall(self) -> list[dict[str, Any]]:
        return []


@pytest.fixture
def fake_psycopg(monkeypatch: pytest.MonkeyPatch) -> _FakePsycopg:
    driver = _FakePsycopg()
    monkeypatch.setattr(
        PostgresMessageStore, "_load_psycopg", staticmethod(lambda: (driver, object()))
    )
    return driver


def test_build_message_store_selects_backend(fake_psycopg: _FakePsycopg) -> None:
    assert isinstance(build_message_store("memory", database_url=""), InMemoryMessageStore)
    store = build_message_store("postgres", database_url="postgresql://u:p@localhost/db")
    assert isinstance(store, PostgresMessageStore)
    with pytest.raises(RuntimeError, match="Missing database URL"):
        build_message_store("postgres", database_url="")
    with pytest.raises(ValueError):
        build_message_store("sqlite", database_url="")


def test_build_coordination_store_selects_backend() -> None:
    assert isinstance(
        build_coordination_store("memory", redis_url=""), InMemoryCoordinationStore
    )
    assert isinstance(
        build_coordination_store("redis", redis_url="redis://localhost:6379/0"),
        RedisCoordinationStore,
    )
    with pytest.raises(ValueError):
        build_coordination_store("memcached", redis_url="")


def test_postgres_migrate_creates_tables(fake_psycopg: _FakePsycopg) -> None:
    PostgresMessageStore("postgresql://u:p@localhost/db").migrate()
    statements = " ".join(fake_psycopg.executed)
    assert "CREATE TABLE IF NOT EXISTS conversations" in statements
    assert "CREATE TABLE IF NOT EXISTS messages" in statements


def test_postgres_append_to_unknown_conversation(fake_psycopg: _FakePsycopg) -> None:
    store = PostgresMessageStore("postgresql://u:p@localhost/db")
    with pytest.raises(ConversationNotFoundError):
        store.append_message("missing", "user", "hello")


def test_postgres_driver_errors_become_message_store_errors(fake_psycopg: _FakePsycopg) -> None:
    store = PostgresMessageStore("postgresql://u:p@localhost/db")
    fake_psycopg.fail = True

    with pytest.raises(MessageStoreError):
        store.recent_messages(_CONVERSATION, 5)
    with pytest.raises(MessageStoreError):
        store.create_conversation("title")
    assert store.ping() is False


def test_postgres_rejects_empty_url() -> None:
    with pytest.raises(ValueError, match="database_url is required"):
        PostgresMessageStore("")


def test_postgres_queries_compare_uuid_columns(fake_psycopg: _FakePsycopg) -> None:
    store = PostgresMessageStore("postgresql://u:p@localhost/db")

    store.conversation_exists(_CONVERSATION)
    store.recent_messages(_CONVERSATION, 5)

    lookups = [sql for sql in fake_psycopg.executed if "WHERE" in sql]
    assert len(lookups) == 2
    assert all("conversation_id = %s::uuid" in sql for sql in lookups)
    assert not any("::text" in sql for sql in fake_psycopg.executed)


def test_postgres_non_uuid_ids_skip_the_database(fake_psycopg: _FakePsycopg) -> None:
    store = PostgresMessageStore("postgresql://u:p@localhost/db")

    assert store.conversation_exists("not-a-uuid") is False
    assert store.recent_messages("not-a-uuid", 5) == []
    assert fake_psycopg.executed == []


def test_redis_client_is_built_with_socket_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    import redis

    captured: dict[str, Any] = {}

    def fake_from_url(url: str, **kwargs: Any) -> object:
        captured["url"] = url
        captured.update(kwargs)
        return object()

    monkeypatch.setattr(redis.Redis, "from_url", staticmethod(fake_from_url))

    build_coordination_store(
        "redis", redis_url="redis://cache:6379/1", socket_timeout_s=0.5
    )

    assert captured["url"] == "redis://cache:6379/1"
    assert captured["socket_timeout"] == 0.5
    assert captured["socket_connect_timeout"] == 0.5
    assert captured["decode_responses"] is True
