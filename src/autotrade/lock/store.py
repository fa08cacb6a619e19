"""TTL key-value store contract and the scoped per-bot execution lock."""

from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Protocol

from autotrade.errors import LockLost, LockUnavailable
from autotrade.utils.logging import get_logger

PROCESSING_KEY_PREFIX = "processing:"


class LockStore(Protocol):
    """Key-value store with atomic set-if-absent and per-key expiry."""

    def try_acquire(self, key: str, ttl_seconds: int, token: str = "1") -> bool:
        """Set ``key`` to ``token`` iff absent. Must fail closed (``False``) when unreachable."""

    def release(self, key: str, token: str | None = None) -> None:
        """Delete ``key``; with ``token`` only when it still holds that token. Idempotent."""

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        """Unconditionally set ``key`` with an expiry."""

    def get(self, key: str) -> str | None:
        """Return the live value of ``key`` or ``None``."""

    def delete(self, key: str) -> None:
        """Delete ``key`` if present."""

    def keys(self, prefix: str = "") -> list[str]:
        """Live keys starting with ``prefix``."""

    def ping(self) -> bool:
        """Whether the store is reachable right now."""


class MemoryLockStore:
    """In-process store for paper mode and tests.

    Expired keys are evicted lazily on access. ``clock`` must be monotonic.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, tuple[str, float]] = {}

    def try_acquire(self, key: str, ttl_seconds: int, token: str = "1") -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._items[key] = (token, self._clock() + ttl_seconds)
            return True

    def release(self, key: str, token: str | None = None) -> None:
        with self._lock:
            current = self._live_value(key)
            if current is None:
                return
            if token is not None and current != token:
                return
            self._items.pop(key, None)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._items[key] = (value, self._clock() + ttl_seconds)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._live_value(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in list(self._items) if key.startswith(prefix) and self._live_value(key)]

    def ping(self) -> bool:
        return True

    def _live_value(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._items[key]
            return None
        return value


def processing_key(bot_id: str) -> str:
    return f"{PROCESSING_KEY_PREFIX}{bot_id}"


class ExecutionLock:
    """Scoped mutual exclusion for one pipeline run of one bot.

    Usage::

        with ExecutionLock(store, bot.id, ttl) as lock:
            ...
            lock.ensure_held()
            broker.place_order(...)

    Entering raises ``LockUnavailable`` when another run holds the key (or the
    store is down). Exiting always releases, but only the token this run set,
    so a run whose TTL lapsed cannot delete its successor's lock.
    """

    def __init__(self, store: LockStore, bot_id: str, ttl_seconds: int) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._logger = get_logger("autotrade.lock")
        self.bot_id = bot_id
        self.key = processing_key(bot_id)
        self.token = uuid.uuid4().hex
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        self._held = self._store.try_acquire(self.key, self._ttl_seconds, self.token)
        return self._held

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self._store.release(self.key, self.token)

    def ensure_held(self) -> None:
        """Raise ``LockLost`` if the key no longer carries this run's token."""
        if not self._held or self._store.get(self.key) != self.token:
            self._logger.warning("execution_lock_lost", bot_id=self.bot_id, key=self.key)
            raise LockLost(f"execution_lock_lost: {self.bot_id}")

    def __enter__(self) -> ExecutionLock:
        if not self.acquire():
            raise LockUnavailable(f"bot_locked: {self.bot_id}")
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
