"""Timeframe-bucketed scheduling of bot pipeline runs."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

from autotrade.errors import BotNotFound
from autotrade.persistence.store import BotRepository
from autotrade.types import Timeframe
from autotrade.utils.logging import get_logger

RunBot = Callable[[str], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeframeTrigger:
    """Daemon thread firing ``on_fire(timeframe)`` on each aligned boundary."""

    def __init__(
        self,
        timeframe: Timeframe,
        on_fire: Callable[[Timeframe], Any],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.timeframe = timeframe
        self._on_fire = on_fire
        self._clock = clock
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"trigger-{timeframe.value}",
            daemon=True,
        )
        self._logger = get_logger("autotrade.scheduler")

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = self._clock()
            delay = (self.timeframe.next_boundary(now) - now).total_seconds()
            if self._stop.wait(max(0.0, delay)):
                return
            try:
                self._on_fire(self.timeframe)
            except Exception as exc:  # noqa: BLE001 - the trigger must keep firing.
                self._logger.exception("trigger_fire_failed", timeframe=self.timeframe.value, error=str(exc))


class BotScheduler:
    """Keep one trigger per non-empty timeframe and fan ticks out to a worker pool.

    ``run_bot`` is called in a worker thread with the bot id; it is expected to
    take the bot's execution lock itself.
    """

    def __init__(
        self,
        repository: BotRepository,
        run_bot: RunBot,
        *,
        max_workers: int = 8,
        trigger_factory: Callable[[Timeframe, Callable[[Timeframe], Any]], TimeframeTrigger] | None = None,
    ) -> None:
        self._repository = repository
        self._run_bot = run_bot
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bot-worker")
        self._trigger_factory = trigger_factory or (lambda tf, fire: TimeframeTrigger(tf, fire))
        self._lock = threading.RLock()
        self._buckets: dict[Timeframe, set[str]] = {}
        self._bot_timeframes: dict[str, Timeframe] = {}
        self._triggers: dict[Timeframe, TimeframeTrigger] = {}
        self._closed = False
        self._logger = get_logger("autotrade.scheduler")

    def initialize(self) -> int:
        """Register every active bot from the repository. Returns how many were registered."""
        count = self.sync()
        self._logger.info(
            "scheduler_initialized",
            bots=count,
            timeframes=[tf.value for tf in self.active_timeframes()],
        )
        return count

    def sync(self) -> int:
        """Match the registry to the repository's active bots.

        Picks up bots started or stopped by another process.
        """
        bots = self._repository.get_active_bots()
        active_ids = {bot.id for bot in bots}
        with self._lock:
            stale = [bot_id for bot_id in self._bot_timeframes if bot_id not in active_ids]
        for bot_id in stale:
            self.deregister(bot_id)
        for bot in bots:
            self.register(bot.id, bot.timeframe)
        return len(bots)

    def register(self, bot_id: str, timeframe: Timeframe | str) -> None:
        timeframe = Timeframe.parse(timeframe)
        with self._lock:
            if self._closed:
                raise RuntimeError("scheduler_closed")
            previous = self._bot_timeframes.get(bot_id)
            if previous == timeframe:
                return
            if previous is not None:
                self._remove(bot_id, previous)
            self._buckets.setdefault(timeframe, set()).add(bot_id)
            self._bot_timeframes[bot_id] = timeframe
            if timeframe not in self._triggers:
                trigger = self._trigger_factory(timeframe, self.tick)
                self._triggers[timeframe] = trigger
                trigger.start()
                self._logger.info("trigger_started", timeframe=timeframe.value)
        self._logger.info("bot_registered", bot_id=bot_id, timeframe=timeframe.value)

    def deregister(self, bot_id: str) -> bool:
        with self._lock:
            timeframe = self._bot_timeframes.get(bot_id)
            if timeframe is None:
                return False
            self._remove(bot_id, timeframe)
        self._logger.info("bot_deregistered", bot_id=bot_id, timeframe=timeframe.value)
        return True

    def tick(self, timeframe: Timeframe) -> list[Future[Any]]:
        """Dispatch one run per active bot in ``timeframe`` and return without waiting."""
        with self._lock:
            if self._closed:
                return []
            bot_ids = sorted(self._buckets.get(timeframe, ()))

        futures: list[Future[Any]] = []
        for bot_id in bot_ids:
            active = self._is_active(bot_id)
            if active is None:
                continue
            if not active:
                self.deregister(bot_id)
                continue
            futures.append(self._pool.submit(self._run_one, bot_id))
        self._logger.info("tick_dispatched", timeframe=timeframe.value, bots=len(futures))
        return futures

    def registered(self, timeframe: Timeframe | str) -> set[str]:
        with self._lock:
            return set(self._buckets.get(Timeframe.parse(timeframe), ()))

    def active_timeframes(self) -> list[Timeframe]:
        with self._lock:
            return sorted(self._triggers, key=lambda tf: tf.period_seconds)

    def has_trigger(self, timeframe: Timeframe | str) -> bool:
        with self._lock:
            return Timeframe.parse(timeframe) in self._triggers

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            triggers = list(self._triggers.values())
            self._triggers.clear()
            self._buckets.clear()
            self._bot_timeframes.clear()
        for trigger in triggers:
            trigger.stop(timeout=5.0)
        self._pool.shutdown(wait=wait)
        self._logger.info("scheduler_stopped")

    def _remove(self, bot_id: str, timeframe: Timeframe) -> None:
        bucket = self._buckets.get(timeframe)
        if bucket is not None:
            bucket.discard(bot_id)
            if not bucket:
                del self._buckets[timeframe]
                trigger = self._triggers.pop(timeframe, None)
                if trigger is not None:
                    trigger.stop(timeout=0)
                    self._logger.info("trigger_stopped", timeframe=timeframe.value)
        self._bot_timeframes.pop(bot_id, None)

    def _is_active(self, bot_id: str) -> bool | None:
        try:
            return self._repository.get_bot(bot_id).is_active
        except BotNotFound:
            return False
        except Exception as exc:  # noqa: BLE001 - a flaky read skips this bot for one tick.
            self._logger.warning("bot_state_read_failed", bot_id=bot_id, error=str(exc))
            return None

    def _run_one(self, bot_id: str) -> Any:
        try:
            return self._run_bot(bot_id)
        except Exception as exc:  # noqa: BLE001 - isolate one bot from the rest of the tick.
            self._logger.exception("bot_run_failed", bot_id=bot_id, error=str(exc))
            return None
