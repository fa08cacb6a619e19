from __future__ import annotations

import threading

import pytest
import redis

from autotrade.errors import LockLost, LockUnavailable
from autotrade.lock.redis_store import RedisLockStore
from autotrade.lock.store import ExecutionLock, MemoryLockStore, processing_key


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_concurrent_acquire_exactly_one_wins() -> None:
    store = MemoryLockStore()
    barrier = threading.Barrier(16)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        won = store.try_acquire("processing:bot-1", 30, threading.current_thread().name)
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=_worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert results.count(False) == 15


def test_ttl_expiry_recovers_a_crashed_holder() -> None:
    clock = _Clock()
    store = MemoryLockStore(clock=clock)
    assert store.try_acquire("processing:bot-1", 10)
    # holder "crashes" and never releases
    clock.now += 9.5
    assert not store.try_acquire("processing:bot-1", 10)
    clock.now += 0.5
    assert store.try_acquire("processing:bot-1", 10)


def test_release_is_idempotent_and_token_checked() -> None:
    store = MemoryLockStore()
    assert store.try_acquire("k", 30, "mine")
    store.release("k", "someone-else")
    assert store.get("k") == "mine"
    store.release("k", "mine")
    store.release("k", "mine")
    assert store.get("k") is None


def test_execution_lock_excludes_second_run() -> None:
    store = MemoryLockStore()
    with ExecutionLock(store, "bot-1", 60) as held:
        assert held.held
        with pytest.raises(LockUnavailable):
            with ExecutionLock(store, "bot-1", 60):
                pass
    assert store.get(processing_key("bot-1")) is None
    assert ExecutionLock(store, "bot-1", 60).acquire()


def test_ensure_held_detects_takeover_after_expiry() -> None:
    clock = _Clock()
    store = MemoryLockStore(clock=clock)
    stale = ExecutionLock(store, "bot-1", 5)
    assert stale.acquire()
    clock.now += 6
    fresh = ExecutionLock(store, "bot-1", 5)
    assert fresh.acquire()

    with pytest.raises(LockLost):
        stale.ensure_held()
    stale.release()
    # the stale run must not free its successor's lock
    assert store.get(fresh.key) == fresh.token


class _DownRedis:
    def register_script(self, script: str) -> object:
        def _run(keys: list[str], args: list[str]) -> int:
            raise redis.ConnectionError("down")

        return _run

    def set(self, *args: object, **kwargs: object) -> bool:
        raise redis.ConnectionError("down")

    def get(self, key: str) -> str:
        raise redis.ConnectionError("down")

    def ping(self) -> bool:
        raise redis.ConnectionError("down")


def test_redis_store_fails_closed_when_unreachable() -> None:
    store = RedisLockStore(_DownRedis())  # type: ignore[arg-type]
    assert store.try_acquire("processing:bot-1", 30, "tok") is False
    assert store.get("processing:bot-1") is None
    assert store.ping() is False
    store.release("processing:bot-1", "tok")
