from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from autotrade.persistence.store import MemoryRepository
from autotrade.scheduler import BotScheduler, TimeframeTrigger
from autotrade.types import Timeframe
from conftest import make_bot


class _FakeTrigger:
    def __init__(self, timeframe: Timeframe, on_fire: Callable[[Timeframe], Any]) -> None:
        self.timeframe = timeframe
        self.on_fire = on_fire
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self, timeout: float | None = None) -> None:
        self.stopped = True


class _Harness:
    def __init__(self, repo: MemoryRepository, run_bot: Callable[[str], Any] | None = None) -> None:
        self.triggers: list[_FakeTrigger] = []
        self.calls: list[str] = []
        self.calls_lock = threading.Lock()

        def _factory(tf: Timeframe, fire: Callable[[Timeframe], Any]) -> _FakeTrigger:
            trigger = _FakeTrigger(tf, fire)
            self.triggers.append(trigger)
            return trigger

        def _record(bot_id: str) -> str:
            with self.calls_lock:
                self.calls.append(bot_id)
            return bot_id

        self.scheduler = BotScheduler(
            repo,
            run_bot or _record,
            max_workers=4,
            trigger_factory=_factory,  # type: ignore[arg-type]
        )


def test_one_trigger_per_timeframe_and_teardown_when_empty() -> None:
    repo = MemoryRepository()
    harness = _Harness(repo)
    scheduler = harness.scheduler

    scheduler.register("a", Timeframe.H1)
    scheduler.register("b", "60")
    scheduler.register("c", Timeframe.M5)
    assert scheduler.registered(Timeframe.H1) == {"a", "b"}
    assert scheduler.active_timeframes() == [Timeframe.M5, Timeframe.H1]
    assert len(harness.triggers) == 2

    scheduler.deregister("a")
    assert scheduler.has_trigger(Timeframe.H1)
    scheduler.deregister("b")
    assert not scheduler.has_trigger(Timeframe.H1)
    h1_trigger = next(t for t in harness.triggers if t.timeframe is Timeframe.H1)
    assert h1_trigger.stopped

    # a restart creates a fresh trigger
    scheduler.register("a", Timeframe.H1)
    assert scheduler.has_trigger(Timeframe.H1)
    assert len(harness.triggers) == 3
    assert harness.triggers[-1].started
    scheduler.shutdown()


def test_reregister_moves_bot_between_timeframes() -> None:
    harness = _Harness(MemoryRepository())
    scheduler = harness.scheduler
    scheduler.register("a", Timeframe.H1)
    scheduler.register("a", Timeframe.H4)
    assert scheduler.registered(Timeframe.H1) == set()
    assert scheduler.registered(Timeframe.H4) == {"a"}
    assert not scheduler.has_trigger(Timeframe.H1)
    assert not scheduler.deregister("zzz")
    scheduler.shutdown()


def test_tick_never_dispatches_inactive_bots() -> None:
    repo = MemoryRepository()
    repo.create_bot(make_bot("on", is_active=True))
    repo.create_bot(make_bot("off", is_active=False))
    harness = _Harness(repo)
    scheduler = harness.scheduler
    scheduler.register("on", Timeframe.H1)
    scheduler.register("off", Timeframe.H1)
    scheduler.register("ghost", Timeframe.H1)

    futures = scheduler.tick(Timeframe.H1)
    results = [future.result(timeout=5) for future in futures]

    assert results == ["on"]
    assert harness.calls == ["on"]
    assert scheduler.registered(Timeframe.H1) == {"on"}
    scheduler.shutdown()


def test_one_failing_bot_does_not_block_the_tick() -> None:
    repo = MemoryRepository()
    for bot_id in ("a", "b", "c"):
        repo.create_bot(make_bot(bot_id))
    seen: list[str] = []
    seen_lock = threading.Lock()

    def _run(bot_id: str) -> str:
        with seen_lock:
            seen.append(bot_id)
        if bot_id == "b":
            raise RuntimeError("boom")
        return bot_id

    harness = _Harness(repo, _run)
    scheduler = harness.scheduler
    for bot_id in ("a", "b", "c"):
        scheduler.register(bot_id, Timeframe.M15)

    results = [future.result(timeout=5) for future in scheduler.tick(Timeframe.M15)]

    assert sorted(seen) == ["a", "b", "c"]
    assert sorted(r for r in results if r) == ["a", "c"]
    scheduler.shutdown()


def test_initialize_and_sync_follow_repository_state() -> None:
    repo = MemoryRepository()
    repo.create_bot(make_bot("a", timeframe=Timeframe.M5))
    repo.create_bot(make_bot("b", timeframe=Timeframe.D1))
    repo.create_bot(make_bot("c", is_active=False))
    harness = _Harness(repo)
    scheduler = harness.scheduler

    assert scheduler.initialize() == 2
    assert scheduler.active_timeframes() == [Timeframe.M5, Timeframe.D1]

    repo.update_bot("b", {"is_active": False})
    repo.update_bot("c", {"is_active": True})
    scheduler.sync()
    assert scheduler.active_timeframes() == [Timeframe.M5, Timeframe.H1]
    scheduler.shutdown()
    assert scheduler.tick(Timeframe.M5) == []


def test_trigger_fires_on_boundaries_and_stops() -> None:
    fired = threading.Event()
    count = 0

    def _fire(timeframe: Timeframe) -> None:
        nonlocal count
        count += 1
        fired.set()

    def _clock() -> datetime:
        # always just before the next minute boundary
        now = datetime.now().astimezone()
        return Timeframe.M1.next_boundary(now) - timedelta(milliseconds=5)

    trigger = TimeframeTrigger(Timeframe.M1, _fire, clock=_clock)
    trigger.start()
    assert fired.wait(timeout=5)
    assert trigger.running
    trigger.stop(timeout=5)
    assert not trigger.running
    assert count >= 1
