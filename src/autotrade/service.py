"""Bot lifecycle and status, the surface the dashboard and CLI talk to."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from autotrade.lock.store import LockStore, processing_key
from autotrade.persistence.store import BotRepository
from autotrade.pipeline import BotPipeline
from autotrade.risk.performance import compute_performance, performance_alerts
from autotrade.risk.rules import local_day_start
from autotrade.scheduler import BotScheduler
from autotrade.strategy.evaluator import StrategyBook
from autotrade.types import (
    Bot,
    BotStatus,
    DailyStats,
    PerformanceMetrics,
    RiskSettings,
    Timeframe,
    Trade,
    parse_iso,
)
from autotrade.utils.logging import get_logger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BotControlService:
    """Start, stop, create and inspect bots.

    Stopping never touches open positions; closing them is the owner's call.
    """

    def __init__(
        self,
        repository: BotRepository,
        scheduler: BotScheduler,
        lock_store: LockStore,
        book: StrategyBook,
        *,
        pipeline: BotPipeline | None = None,
        timezone_name: str = "UTC",
        starting_equity: float = 10_000.0,
        min_win_rate_pct: float = 40.0,
        max_margin_usage_pct: float = 80.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._scheduler = scheduler
        self._lock_store = lock_store
        self._book = book
        self._pipeline = pipeline
        self._tz = ZoneInfo(timezone_name)
        self._starting_equity = starting_equity
        self._min_win_rate_pct = min_win_rate_pct
        self._max_margin_usage_pct = max_margin_usage_pct
        self._clock = clock
        self._logger = get_logger("autotrade.service")

    def create_bot(
        self,
        *,
        owner_id: str,
        symbol: str,
        timeframe: Timeframe | str,
        strategy_id: str,
        risk: RiskSettings | None = None,
        bot_id: str | None = None,
    ) -> Bot:
        """Persist a new, inactive bot. Unknown strategy ids are refused."""
        self._book.get(strategy_id)
        bot = Bot(
            id=bot_id or uuid.uuid4().hex[:12],
            owner_id=owner_id,
            symbol=symbol.strip().upper(),
            timeframe=Timeframe.parse(timeframe),
            strategy_id=strategy_id,
            risk=risk or RiskSettings(),
        )
        created = self._repository.create_bot(bot)
        self._logger.info(
            "bot_created",
            bot_id=created.id,
            symbol=created.symbol,
            timeframe=created.timeframe.value,
            strategy_id=created.strategy_id,
        )
        return created

    def list_bots(self) -> list[Bot]:
        return self._repository.list_bots()

    def start_bot(self, bot_id: str) -> Bot:
        bot = self._repository.get_bot(bot_id)
        self._book.get(bot.strategy_id)
        bot = self._repository.update_bot(
            bot_id,
            {"is_active": True, "stop_reason": None, "stopped_at": None, "last_error": None},
        )
        self._scheduler.register(bot.id, bot.timeframe)
        self._logger.info("bot_started", bot_id=bot_id, timeframe=bot.timeframe.value)
        return bot

    def stop_bot(self, bot_id: str) -> Bot:
        self._repository.get_bot(bot_id)
        self._scheduler.deregister(bot_id)
        bot = self._repository.update_bot(
            bot_id,
            {"is_active": False, "stopped_at": self._clock().isoformat()},
        )
        # An in-flight run keeps its lock and releases its own token when done.
        in_flight = self._lock_store.get(processing_key(bot_id)) is not None
        if self._pipeline is not None:
            self._pipeline.discard_session(bot_id)
        self._logger.info("bot_stopped", bot_id=bot_id, run_in_flight=in_flight)
        return bot

    def get_bot_status(self, bot_id: str) -> BotStatus:
        bot = self._repository.get_bot(bot_id)
        trades = self._repository.list_trades(bot_id)
        stats = self._daily_stats(bot_id)
        errors = [message for message in (bot.last_error, bot.stop_reason) if message]
        return BotStatus(
            id=bot.id,
            is_active=bot.is_active,
            last_check=bot.last_evaluated_at,
            last_trade=trades[-1].opened_at if trades else None,
            daily_stats=stats,
            errors=errors,
            performance=self._performance(bot, trades, stats),
        )

    def get_bot_performance(self, bot_id: str) -> PerformanceMetrics:
        """All-time metrics of one bot with any threshold alerts raised."""
        bot = self._repository.get_bot(bot_id)
        return self._performance(bot, self._repository.list_trades(bot_id), self._daily_stats(bot_id))

    def _daily_stats(self, bot_id: str) -> DailyStats:
        day_start = local_day_start(self._clock(), self._tz)
        closed_today = [
            t
            for t in self._repository.get_trades_since(bot_id, day_start)
            if t.closed_at is not None
            and t.profit_loss is not None
            and parse_iso(t.closed_at) >= day_start
        ]
        wins = sum(1 for t in closed_today if (t.profit_loss or 0.0) > 0)
        return DailyStats(
            trades=len(closed_today),
            win_rate=wins / len(closed_today) if closed_today else 0.0,
            profit_loss=sum(t.profit_loss or 0.0 for t in closed_today),
        )

    def _performance(self, bot: Bot, trades: list[Trade], daily: DailyStats) -> PerformanceMetrics:
        metrics = compute_performance(
            trades,
            starting_equity=self._starting_equity,
            daily_profit_loss=daily.profit_loss,
        )
        metrics.alerts = performance_alerts(
            metrics,
            bot.risk,
            min_win_rate_pct=self._min_win_rate_pct,
            max_margin_usage_pct=self._max_margin_usage_pct,
        )
        for alert in metrics.alerts:
            self._logger.warning("performance_alert", bot_id=bot.id, alert=alert)
        return metrics
