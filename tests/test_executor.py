from __future__ import annotations

import pytest

from autotrade.errors import PersistenceFailure, TradeRejected
from autotrade.exec.executor import TradeExecutor, position_key
from autotrade.lock.store import MemoryLockStore
from autotrade.persistence.store import MemoryRepository
from autotrade.types import RiskSettings, Signal, Trade
from conftest import FakeBroker, make_bot


def _signal(direction: str = "LONG") -> Signal:
    if direction == "LONG":
        return Signal("LONG", 0.9, 14.0, 13.0, 16.0, "xover_2_3")
    return Signal("SHORT", 0.9, 14.0, 15.0, 12.0, "xover_2_3")


class _BrokenTradeRepository(MemoryRepository):
    def create_trade(self, trade: Trade) -> Trade:
        raise PersistenceFailure("disk_full")


def _executor(broker: FakeBroker, repo: MemoryRepository, cache: MemoryLockStore) -> TradeExecutor:
    return TradeExecutor(broker, repo, cache, position_cache_ttl=3600)


def test_open_sizes_from_balance_and_caches_position() -> None:
    broker, repo, cache = FakeBroker(price=14.0), MemoryRepository(), MemoryLockStore()
    bot = repo.create_bot(make_bot())

    trade = _executor(broker, repo, cache).open(bot, _signal(), lock_token="tok")

    # 1% of 10_000 over a 1.0 stop distance
    assert trade.quantity == pytest.approx(100.0)
    assert trade.lock_token == "tok"
    assert trade.id == "ord-1"
    assert repo.get_open_trade(bot.id) == trade
    cached = _executor(broker, repo, cache).cached_position(bot.id)
    assert cached is not None and cached["id"] == "ord-1"
    assert list(_executor(broker, repo, cache).open_positions()) == [bot.id]


def test_second_open_is_rejected_without_pyramiding() -> None:
    broker, repo, cache = FakeBroker(), MemoryRepository(), MemoryLockStore()
    bot = repo.create_bot(make_bot())
    executor = _executor(broker, repo, cache)
    executor.open(bot, _signal(), quantity=1.0)

    with pytest.raises(TradeRejected):
        executor.open(bot, _signal(), quantity=1.0)
    assert len(broker.orders) == 1


def test_pyramiding_allows_a_second_entry() -> None:
    broker, repo, cache = FakeBroker(), MemoryRepository(), MemoryLockStore()
    bot = repo.create_bot(make_bot(risk=RiskSettings(allow_pyramiding=True, max_concurrent_positions=2)))
    executor = _executor(broker, repo, cache)
    executor.open(bot, _signal(), quantity=1.0)
    executor.open(bot, _signal(), quantity=1.0)
    assert len(broker.orders) == 2


def test_close_without_open_trade_changes_nothing() -> None:
    broker, repo, cache = FakeBroker(), MemoryRepository(), MemoryLockStore()
    bot = repo.create_bot(make_bot())
    executor = _executor(broker, repo, cache)

    with pytest.raises(TradeRejected):
        executor.close_open_trade(bot.id)
    with pytest.raises(TradeRejected):
        executor.close("ord-404")
    assert broker.closed == []
    assert repo.list_trades() == []


def test_close_records_side_aware_pnl_and_clears_cache() -> None:
    broker, repo, cache = FakeBroker(price=14.0), MemoryRepository(), MemoryLockStore()
    bot = repo.create_bot(make_bot())
    executor = _executor(broker, repo, cache)
    opened = executor.open(bot, _signal("SHORT"), quantity=2.0)

    broker.price = 12.5
    closed = executor.close(opened.id)

    assert closed.profit_loss == pytest.approx(3.0)
    assert closed.exit_price == 12.5
    assert not closed.is_open
    assert broker.closed == [opened.id]
    assert cache.get(position_key(bot.id)) is None

    with pytest.raises(TradeRejected):
        executor.close(opened.id)
    assert broker.closed == [opened.id]


def test_trade_write_failure_after_order_keeps_the_position_tracked() -> None:
    broker, repo, cache = FakeBroker(), _BrokenTradeRepository(), MemoryLockStore()
    bot = repo.create_bot(make_bot())

    executor = _executor(broker, repo, cache)
    with pytest.raises(PersistenceFailure):
        executor.open(bot, _signal(), quantity=1.0)

    assert len(broker.orders) == 1
    assert cache.get(position_key(bot.id)) is not None

    # the untracked fill still blocks a second entry
    with pytest.raises(TradeRejected):
        executor.open(bot, _signal(), quantity=1.0)
    assert len(broker.orders) == 1
