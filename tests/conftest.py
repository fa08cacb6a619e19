from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from autotrade.brokers.base import BrokerCredentials
from autotrade.config import Settings
from autotrade.errors import BrokerUnavailable
from autotrade.journal.store import JournalStore
from autotrade.lock.store import MemoryLockStore
from autotrade.persistence.store import MemoryRepository
from autotrade.pipeline import BotPipeline
from autotrade.strategy.evaluator import StrategyBook, StrategyEvaluator
from autotrade.strategy.rules import StrategyDefinition
from autotrade.types import Bar, Bot, Direction, RiskSettings, Timeframe

# fast/slow SMA flip from below to above on the last bar
CROSSOVER_CLOSES = [10.0, 11.0, 9.0, 12.0, 14.0]


def make_bars(closes: list[float], timeframe: Timeframe = Timeframe.H1) -> list[Bar]:
    start = datetime(2024, 1, 1, tzinfo=UTC)
    step = timedelta(seconds=timeframe.period_seconds)
    return [
        Bar(
            open_time=start + i * step,
            open=close,
            high=close + 0.5,
            low=close - 0.5,
            close=close,
            volume=100.0,
        )
        for i, close in enumerate(closes)
    ]


class FakeBroker:
    """In-memory broker session recording every call."""

    def __init__(
        self,
        bars: list[Bar] | None = None,
        *,
        price: float | None = None,
        balance: float = 10_000.0,
    ) -> None:
        self.bars = bars if bars is not None else make_bars(CROSSOVER_CLOSES)
        self.price = price if price is not None else self.bars[-1].close
        self.balance = balance
        self.connected = False
        self.fail_candles = False
        self.on_balance: Callable[[], None] | None = None
        self.orders: list[dict[str, object]] = []
        self.closed: list[str] = []

    def connect(self, credentials: BrokerCredentials) -> None:
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    def get_candles(self, symbol: str, timeframe: Timeframe, count: int) -> list[Bar]:
        if self.fail_candles:
            raise BrokerUnavailable("exchange_down")
        return list(self.bars[-count:])

    def get_current_price(self, symbol: str) -> float:
        return self.price

    def get_account_balance(self) -> float:
        if self.on_balance is not None:
            self.on_balance()
        return self.balance

    def place_order(
        self,
        symbol: str,
        side: Direction,
        quantity: float,
        stop_loss: float,
        take_profit: float,
    ) -> str:
        order_id = f"ord-{len(self.orders) + 1}"
        self.orders.append(
            {
                "id": order_id,
                "symbol": symbol,
                "side": side,
                "quantity": quantity,
                "stop_loss": stop_loss,
                "take_profit": take_profit,
            }
        )
        return order_id

    def close_position(self, trade_id: str) -> None:
        self.closed.append(trade_id)


def make_bot(
    bot_id: str = "bot-1",
    *,
    strategy_id: str = "xover_2_3",
    timeframe: Timeframe = Timeframe.H1,
    is_active: bool = True,
    risk: RiskSettings | None = None,
) -> Bot:
    return Bot(
        id=bot_id,
        owner_id="owner-1",
        symbol="BTCUSDT",
        timeframe=timeframe,
        strategy_id=strategy_id,
        risk=risk or RiskSettings(),
        is_active=is_active,
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        journal_dir=tmp_path / "journal",
        candle_lookback=50,
    )


@pytest.fixture
def book() -> StrategyBook:
    book = StrategyBook.with_builtins()
    book.register(
        StrategyDefinition.parse(
            {"id": "xover_2_3", "kind": "ma_crossover", "params": {"fast": 2, "slow": 3}}
        )
    )
    return book


@pytest.fixture
def repository() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture
def lock_store() -> MemoryLockStore:
    return MemoryLockStore()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def pipeline(
    settings: Settings,
    repository: MemoryRepository,
    lock_store: MemoryLockStore,
    broker: FakeBroker,
    book: StrategyBook,
) -> BotPipeline:
    return BotPipeline(
        settings,
        repository=repository,
        lock_store=lock_store,
        broker_factory=lambda bot: broker,
        evaluator=StrategyEvaluator(book),
        journal=JournalStore(settings.journal_dir),
    )
