from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from autotrade.errors import BotNotFound, InvalidStrategyConfig
from autotrade.lock.store import ExecutionLock, MemoryLockStore, processing_key
from autotrade.persistence.store import MemoryRepository
from autotrade.scheduler import BotScheduler
from autotrade.service import BotControlService
from autotrade.strategy.evaluator import StrategyBook
from autotrade.types import Timeframe, Trade

_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class _NullTrigger:
    def __init__(self, timeframe: Timeframe, on_fire: object) -> None:
        self.timeframe = timeframe

    def start(self) -> None:
        pass

    def stop(self, timeout: float | None = None) -> None:
        pass


def _service(repo: MemoryRepository, store: MemoryLockStore, book: StrategyBook) -> BotControlService:
    scheduler = BotScheduler(
        repo,
        lambda bot_id: None,
        max_workers=1,
        trigger_factory=_NullTrigger,  # type: ignore[arg-type]
    )
    return BotControlService(repo, scheduler, store, book, clock=lambda: _NOW)


def _trade(trade_id: str, pnl: float | None, closed_at: datetime | None) -> Trade:
    return Trade(
        id=trade_id,
        bot_id="b1",
        symbol="ETHUSDT",
        side="LONG",
        entry_price=100.0,
        quantity=1.0,
        stop_loss=90.0,
        take_profit=120.0,
        opened_at=((closed_at or _NOW) - timedelta(hours=1)).isoformat(),
        closed_at=closed_at.isoformat() if closed_at else None,
        exit_price=100.0 + pnl if pnl is not None else None,
        profit_loss=pnl,
    )


def test_create_start_stop_cycle(book: StrategyBook) -> None:
    repo, store = MemoryRepository(), MemoryLockStore()
    service = _service(repo, store, book)

    bot = service.create_bot(owner_id="u1", symbol=" ethusdt ", timeframe="15", strategy_id="xover_2_3", bot_id="b1")
    assert bot.symbol == "ETHUSDT"
    assert bot.timeframe is Timeframe.M15
    assert not bot.is_active

    repo.update_bot("b1", {"stop_reason": "max_daily_loss_reached: 120.00 >= 100.00"})
    started = service.start_bot("b1")
    assert started.is_active
    assert started.stop_reason is None
    assert service._scheduler.registered(Timeframe.M15) == {"b1"}

    repo.create_trade(_trade("t-open", None, None))
    stopped = service.stop_bot("b1")

    assert not stopped.is_active
    assert stopped.stopped_at == _NOW.isoformat()
    assert service._scheduler.registered(Timeframe.M15) == set()
    # positions are left alone
    open_trade = repo.get_open_trade("b1")
    assert open_trade is not None and open_trade.id == "t-open"


def test_create_rejects_unknown_strategy(book: StrategyBook) -> None:
    service = _service(MemoryRepository(), MemoryLockStore(), book)
    with pytest.raises(InvalidStrategyConfig):
        service.create_bot(owner_id="u1", symbol="BTCUSDT", timeframe="1h", strategy_id="nope")
    assert service.list_bots() == []


def test_unknown_bot(book: StrategyBook) -> None:
    service = _service(MemoryRepository(), MemoryLockStore(), book)
    with pytest.raises(BotNotFound):
        service.start_bot("ghost")
    with pytest.raises(BotNotFound):
        service.get_bot_status("ghost")


def test_status_reports_daily_stats_and_errors(book: StrategyBook) -> None:
    repo, store = MemoryRepository(), MemoryLockStore()
    service = _service(repo, store, book)
    service.create_bot(owner_id="u1", symbol="ETHUSDT", timeframe="1h", strategy_id="xover_2_3", bot_id="b1")
    repo.create_trade(_trade("t-1", 30.0, _NOW - timedelta(hours=2)))
    repo.create_trade(_trade("t-2", -10.0, _NOW - timedelta(hours=1)))
    repo.create_trade(_trade("t-3", -50.0, _NOW - timedelta(days=1)))
    repo.update_bot(
        "b1",
        {
            "last_evaluated_at": _NOW.isoformat(),
            "last_error": "candles_fetch_failed: timeout",
            "stop_reason": "max_drawdown_reached: 12.00% >= 10.00%",
        },
    )

    status = service.get_bot_status("b1")

    assert status.last_check == _NOW.isoformat()
    assert status.daily_stats.trades == 2
    assert status.daily_stats.win_rate == pytest.approx(0.5)
    assert status.daily_stats.profit_loss == pytest.approx(20.0)
    assert status.last_trade == (_NOW - timedelta(hours=2)).isoformat()
    assert status.errors == [
        "candles_fetch_failed: timeout",
        "max_drawdown_reached: 12.00% >= 10.00%",
    ]


def test_stop_and_restart_mid_run_keeps_the_running_cycle_exclusive(book: StrategyBook) -> None:
    repo, store = MemoryRepository(), MemoryLockStore()
    service = _service(repo, store, book)
    service.create_bot(owner_id="u1", symbol="ETHUSDT", timeframe="1h", strategy_id="xover_2_3", bot_id="b1")
    service.start_bot("b1")

    running = ExecutionLock(store, "b1", 60)
    assert running.acquire()

    service.stop_bot("b1")
    service.start_bot("b1")

    assert not ExecutionLock(store, "b1", 60).acquire()
    running.ensure_held()
    running.release()
    assert store.get(processing_key("b1")) is None


def test_performance_read_model(book: StrategyBook) -> None:
    repo, store = MemoryRepository(), MemoryLockStore()
    service = _service(repo, store, book)
    service.create_bot(owner_id="u1", symbol="ETHUSDT", timeframe="1h", strategy_id="xover_2_3", bot_id="b1")
    repo.create_trade(_trade("t-1", 30.0, _NOW - timedelta(hours=2)))
    repo.create_trade(_trade("t-2", -10.0, _NOW - timedelta(hours=1)))
    repo.create_trade(_trade("t-3", -50.0, _NOW - timedelta(days=1)))

    perf = service.get_bot_performance("b1")

    assert perf.total_trades == 3
    assert perf.profit_factor == pytest.approx(0.5)
    assert perf.daily_profit_loss == pytest.approx(20.0)
    assert perf.alerts == ["LOW_WIN_RATE: 33.33% < 40.00%"]
    status = service.get_bot_status("b1")
    assert status.performance == perf
    with pytest.raises(BotNotFound):
        service.get_bot_performance("ghost")
