"""Coordination store backends and the task key layout built on top of them.

Beginner terms:
- TTL (time-to-live): seconds after which a key disappears on its own.
- Coordination store: short-lived shared state that requests use to see what a
  background worker is doing. It is never the record of truth.
- Guard key: a short-lived key created with "set if absent" so only one caller
  at a time can create a task for a conversation.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import UTC, datetime
from typing import Any, Protocol

from .errors import CoordinationUnavailableError, InvalidTransitionError
from .models import ACTIVE_STATUSES, Task, TaskStatus

logger = logging.getLogger(__name__)

# Allowed status changes. Terminal states have no outgoing edges.
_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"processing"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class CoordinationStore(Protocol):
    """Key-value store with per-key TTL. Only single-key atomicity is assumed."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_s: int) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool: ...

    def delete(self, key: str) -> None: ...

    def ping(self) -> bool: ...


class InMemoryCoordinationStore:
    """Process-local store with lazy expiry and a periodic sweep."""

    def __init__(self, *, sweep_interval_s: float = 30.0) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, float]] = {}
        self._sweep_interval_s = sweep_interval_s
        self._last_sweep = time.monotonic()

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= time.monotonic():
                self._data.pop(key, None)
                return None
            return value

    def set(self, key: str, value: str, ttl_s: int) -> None:
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl_s)
            self._maybe_sweep_locked()

    def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        with self._lock:
            now = time.monotonic()
            item = self._data.get(key)
            if item is not None and item[1] > now:
                return False
            self._data[key] = (value, now + ttl_s)
            self._maybe_sweep_locked()
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ping(self) -> bool:
        return True

    def sweep(self) -> int:
        """Drop every expired key and return how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def expire(self, key: str) -> None:
        """Force a key to be expired on its next read (used by tests)."""
        with self._lock:
            item = self._data.get(key)
            if item is not None:
                self._data[key] = (item[0], time.monotonic() - 1.0)

    def _maybe_sweep_locked(self) -> None:
        if time.monotonic() - self._last_sweep >= self._sweep_interval_s:
            removed = self._sweep_locked()
            if removed:
                logger.debug("coordination event=sweep removed=%d", removed)

    def _sweep_locked(self) -> int:
        now = time.monotonic()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        self._last_sweep = now
        return len(expired)


class RedisCoordinationStore:
    """Redis-backed store shared by every API process and worker."""

    def __init__(
        self,
        *,
        url: str = "redis://localhost:6379/0",
        client: Any = None,
        socket_timeout_s: float = 1.0,
    ) -> None:
        self._redis_error = self._load_redis_error()
        if client is None:
            import redis

            # Bounded socket timeouts: an unreachable server raises instead of hanging.
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=socket_timeout_s,
                socket_connect_timeout=socket_timeout_s,
            )
        self._client = client

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except self._redis_error as exc:
            raise CoordinationUnavailableError(f"Redis GET failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_s: int) -> None:
        try:
            self._client.set(key, value, ex=ttl_s)
        except self._redis_error as exc:
            raise CoordinationUnavailableError(f"Redis SET failed: {exc}") from exc

    def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        try:
            return bool(self._client.set(key, value, ex=ttl_s, nx=True))
        except self._redis_error as exc:
            raise CoordinationUnavailableError(f"Redis SET NX failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except self._redis_error as exc:
            raise CoordinationUnavailableError(f"Redis DEL failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except self._redis_error:
            return False

    @staticmethod
    def _load_redis_error() -> type[Exception]:
        try:
            from redis.exceptions import RedisError
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "Redis coordination backend requires redis. Install with: "
                'python -m pip install "redis>=5.0,<6.0"'
            ) from exc
        return RedisError


class TaskRegistry:
    """Reads and writes Task records using the per-field key layout.

    Keys: task:{id}:status, task:{id}:content, task:{id}:error, task:{id}:meta,
    plus task:{id}:worker (single-worker claim) and task:{id}:guard (submission).
    On transitions, payload keys are written before the status key so a reader
    that sees a terminal status also sees its content or error.
    """

    def __init__(
        self, store: CoordinationStore, *, ttl_s: int = 600, guard_ttl_s: int = 30
    ) -> None:
        self.store = store
        self.ttl_s = ttl_s
        self.guard_ttl_s = guard_ttl_s

    @staticmethod
    def key(task_id: str, field: str) -> str:
        return f"task:{task_id}:{field}"

    def get(self, task_id: str) -> Task | None:
        status = self.store.get(self.key(task_id, "status"))
        if status is None:
            return None
        meta = self._read_meta(task_id)
        return Task(
            task_id=task_id,
            status=status,
            content=self.store.get(self.key(task_id, "content")) or "",
            error=self.store.get(self.key(task_id, "error")) or None,
            created_at=meta["created_at"],
            updated_at=meta["updated_at"],
        )

    def create(self, task_id: str) -> Task:
        """Write a fresh queued task, replacing any terminal task for the id."""
        existing = self.store.get(self.key(task_id, "status"))
        if existing in ACTIVE_STATUSES:
            raise InvalidTransitionError(task_id, existing, "queued")
        now = datetime.now(tz=UTC)
        # Status goes first here: readers ignore payload keys of a queued task,
        # so stale content from the previous instance is never served.
        self.store.set(self.key(task_id, "status"), "queued", self.ttl_s)
        self.store.delete(self.key(task_id, "content"))
        self.store.delete(self.key(task_id, "error"))
        self.store.delete(self.key(task_id, "worker"))
        self._write_meta(task_id, created_at=now, updated_at=now)
        return Task(task_id=task_id, status="queued", created_at=now, updated_at=now)

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        content: str | None = None,
        error: str | None = None,
    ) -> Task:
        """Move a task to `target` if the state machine allows it."""
        current = self.get(task_id)
        current_status = current.status if current else None
        if current is None or target not in _TRANSITIONS[current.status]:
            raise InvalidTransitionError(task_id, current_status, target)

        now = datetime.now(tz=UTC)
        if content is not None:
            self.store.set(self.key(task_id, "content"), content, self.ttl_s)
        if error is not None:
            self.store.set(self.key(task_id, "error"), error, self.ttl_s)
        self._write_meta(task_id, created_at=current.created_at, updated_at=now)
        self.store.set(self.key(task_id, "status"), target, self.ttl_s)
        logger.info(
            "task event=transition task_id=%s from=%s to=%s",
            task_id,
            current_status,
            target,
        )
        return current.model_copy(
            update={
                "status": target,
                "content": content if content is not None else current.content,
                "error": error if error is not None else current.error,
                "updated_at": now,
            }
        )

    def claim(self, task_id: str) -> bool:
        """Mark the current task instance as owned by one worker."""
        return self.store.set_if_absent(self.key(task_id, "worker"), "1", self.ttl_s)

    def discard(self, task_id: str) -> None:
        """Remove every key of a task that never reached a worker."""
        for field in ("status", "content", "error", "meta", "worker"):
            self.store.delete(self.key(task_id, field))

    def acquire_guard(self, task_id: str) -> bool:
        return self.store.set_if_absent(self.key(task_id, "guard"), "1", self.guard_ttl_s)

    def release_guard(self, task_id: str) -> None:
        self.store.delete(self.key(task_id, "guard"))

    def _write_meta(self, task_id: str, *, created_at: datetime, updated_at: datetime) -> None:
        payload = json.dumps(
            {"created_at": created_at.isoformat(), "updated_at": updated_at.isoformat()}
        )
        self.store.set(self.key(task_id, "meta"), payload, self.ttl_s)

    def _read_meta(self, task_id: str) -> dict[str, datetime]:
        raw = self.store.get(self.key(task_id, "meta"))
        now = datetime.now(tz=UTC)
        if not raw:
            return {"created_at": now, "updated_at": now}
        parsed = json.loads(raw)
        return {
            "created_at": datetime.fromisoformat(parsed.get("created_at") or now.isoformat()),
            "updated_at": datetime.fromisoformat(parsed.get("updated_at") or now.isoformat()),
        }


def build_coordination_store(
    backend: str, *, redis_url: str, socket_timeout_s: float = 1.0
) -> CoordinationStore:
    if backend == "memory":
        return InMemoryCoordinationStore()
    if backend == "redis":
        return RedisCoordinationStore(url=redis_url, socket_timeout_s=socket_timeout_s)
    raise ValueError(f"Unsupported coordination backend: {backend}")
