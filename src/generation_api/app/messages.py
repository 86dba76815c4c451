"""Durable conversation/message storage backends.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- Append-only: messages are inserted, never updated or deleted.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Protocol

from .errors import ConversationNotFoundError, MessageStoreError
from .models import MessageRecord, MessageRole


class MessageStore(Protocol):
    def migrate(self) -> None: ...

    def create_conversation(self, title: str = "") -> str: ...

    def conversation_exists(self, conversation_id: str) -> bool: ...

    def append_message(
        self, conversation_id: str, role: MessageRole, content: str
    ) -> MessageRecord: ...

    def recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]: ...

    def ping(self) -> bool: ...


class InMemoryMessageStore:
    """Simple in-memory implementation for tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: dict[str, str] = {}
        self._messages: dict[str, list[MessageRecord]] = {}

    def migrate(self) -> None:
        return None

    def create_conversation(self, title: str = "") -> str:
        conversation_id = str(uuid.uuid4())
        with self._lock:
            self._conversations[conversation_id] = title
            self._messages[conversation_id] = []
        return conversation_id

    def conversation_exists(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._conversations

    def append_message(
        self, conversation_id: str, role: MessageRole, content: str
    ) -> MessageRecord:
        with self._lock:
            if conversation_id not in self._conversations:
                raise ConversationNotFoundError(conversation_id)
            record = MessageRecord(
                message_id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=datetime.now(tz=UTC),
            )
            self._messages[conversation_id].append(record)
            return record

    def recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._messages.get(conversation_id, [])[-limit:])

    def ping(self) -> bool:
        return True


class PostgresMessageStore:
    """Thread-safe PostgreSQL-backed storage for conversations and messages."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        # Lazy import helper keeps error message clear if psycopg is missing.
        self._psycopg, self._dict_row = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._translate_errors("migrate"), self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    conversation_id UUID PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    message_id UUID PRIMARY KEY,
                    conversation_id UUID NOT NULL
                        REFERENCES conversations(conversation_id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    seq BIGSERIAL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq
                ON messages(conversation_id, seq DESC)
                """)
            conn.commit()

    def create_conversation(self, title: str = "") -> str:
        conversation_id = uuid.uuid4()
        with self._translate_errors("create_conversation"), self._lock, self._connect() as conn:
            conn.execute(
                "INSERT INTO conversations (conversation_id, title, created_at) "
                "VALUES (%s, %s, %s)",
                (conversation_id, title, datetime.now(tz=UTC)),
            )
            conn.commit()
        return str(conversation_id)

    def conversation_exists(self, conversation_id: str) -> bool:
        key = _as_uuid(conversation_id)
        if key is None:
            return False
        with self._translate_errors("conversation_exists"), self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM conversations WHERE conversation_id = %s::uuid",
                (key,),
            ).fetchone()
        return row is not None

    def append_message(
        self, conversation_id: str, role: MessageRole, content: str
    ) -> MessageRecord:
        """Insert one message row and return it as a typed record."""
        if not self.conversation_exists(conversation_id):
            raise ConversationNotFoundError(conversation_id)
        message_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._translate_errors("append_message"), self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages (message_id, conversation_id, role, content, created_at)
                VALUES (%s, %s::uuid, %s, %s, %s)
                """,
                (message_id, conversation_id, role, content, now),
            )
            conn.commit()
        return MessageRecord(
            message_id=str(message_id),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=now,
        )

    def recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        """Return the newest `limit` messages, oldest first."""
        key = _as_uuid(conversation_id)
        if limit <= 0 or key is None:
            return []
        with self._translate_errors("recent_messages"), self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s::uuid
                ORDER BY seq DESC
                LIMIT %s
                """,
                (key, limit),
            ).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def ping(self) -> bool:
        try:
            with self._lock, self._connect() as conn:
                conn.execute("SELECT 1")
        except self._psycopg.Error:
            return False
        return True

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Re-raise driver errors as MessageStoreError."""
        try:
            yield
        except self._psycopg.Error as exc:
            raise MessageStoreError(f"{operation} failed: {exc}") from exc

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_message(cls, row: Any) -> MessageRecord:
        return MessageRecord(
            message_id=str(row["message_id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            created_at=cls._parse_datetime(row["created_at"]),
        )


def _as_uuid(conversation_id: str) -> uuid.UUID | None:
    """Parse a conversation id; ids that are not UUIDs match no row."""
    try:
        return uuid.UUID(conversation_id)
    except (TypeError, ValueError, AttributeError):
        return None


def build_message_store(backend: str, *, database_url: str) -> MessageStore:
    if backend == "memory":
        return InMemoryMessageStore()
    if backend == "postgres":
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set GENERATION_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        return PostgresMessageStore(database_url)
    raise ValueError(f"Unsupported message store backend: {backend}")
