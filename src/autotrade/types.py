"""Shared domain types for the bot orchestration core."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from autotrade.errors import InvalidTimeframe

Direction = Literal["LONG", "SHORT"]

_PERIOD_SECONDS = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "30m": 30 * 60,
    "1h": 3600,
    "4h": 4 * 3600,
    "1d": 86400,
}

# Minute-count aliases used by older bot records.
_ALIASES = {
    "1": "1m",
    "5": "5m",
    "15": "15m",
    "30": "30m",
    "60": "1h",
    "240": "4h",
    "1D": "1d",
    "D": "1d",
}


class Timeframe(str, Enum):
    """Bar granularity that also drives the scheduling period."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @classmethod
    def parse(cls, value: str | Timeframe) -> Timeframe:
        if isinstance(value, Timeframe):
            return value
        raw = str(value).strip()
        canonical = _ALIASES.get(raw, raw.lower())
        try:
            return cls(canonical)
        except ValueError as exc:
            raise InvalidTimeframe(f"unsupported_timeframe: {value}") from exc

    @property
    def period_seconds(self) -> int:
        return _PERIOD_SECONDS[self.value]

    def next_boundary(self, now: datetime) -> datetime:
        """Next wall-clock boundary strictly after ``now``, aligned to the UTC epoch."""
        period = self.period_seconds
        epoch = now.timestamp()
        boundary = (math.floor(epoch / period) + 1) * period
        return datetime.fromtimestamp(boundary, tz=timezone.utc)

    def lock_ttl(self, max_ttl_seconds: int) -> int:
        """Lock TTL for one pipeline run, kept below the scheduling period."""
        ceiling = max(1, int(self.period_seconds * 0.9))
        return max(1, min(max_ttl_seconds, ceiling))


@dataclass(slots=True)
class Bar:
    """One OHLCV bar."""

    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(slots=True)
class Signal:
    """Directional trade recommendation produced by a strategy."""

    direction: Direction
    confidence: float
    entry_price: float
    stop_loss: float
    take_profit: float
    strategy_id: str
    reasons: list[str] = field(default_factory=list)
    created_at: str = ""


@dataclass(slots=True)
class RiskSettings:
    """Per-bot risk limits."""

    max_risk_per_trade_pct: float = 1.0
    max_position_size: float = float("inf")
    max_concurrent_positions: int = 1
    max_daily_loss: float = float("inf")
    max_drawdown_pct: float = 100.0
    allow_pyramiding: bool = False


@dataclass(slots=True)
class Bot:
    """A user's automated strategy instance bound to one symbol and timeframe."""

    id: str
    owner_id: str
    symbol: str
    timeframe: Timeframe
    strategy_id: str
    risk: RiskSettings = field(default_factory=RiskSettings)
    is_active: bool = False
    last_evaluated_at: str | None = None
    last_error: str | None = None
    stop_reason: str | None = None
    stopped_at: str | None = None
    created_at: str = ""


@dataclass(slots=True)
class Trade:
    """Position record, closed exactly once."""

    id: str
    bot_id: str
    symbol: str
    side: Direction
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    opened_at: str
    closed_at: str | None = None
    exit_price: float | None = None
    profit_loss: float | None = None
    lock_token: str | None = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None


@dataclass(slots=True)
class AccountState:
    """Account view handed to the risk gatekeeper."""

    balance: float
    trades: list[Trade] = field(default_factory=list)
    now: datetime | None = None


@dataclass(slots=True)
class RiskDecision:
    """Gatekeeper verdict for one candidate trade."""

    approved: bool
    quantity: float = 0.0
    reason: str | None = None
    breach: bool = False


@dataclass(slots=True)
class CycleResult:
    """Outcome of one pipeline run for one bot."""

    bot_id: str
    status: str
    signal: Signal | None = None
    trade: Trade | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    elapsed_ms: float = 0.0


@dataclass(slots=True)
class DailyStats:
    """Closed-trade statistics since local midnight."""

    trades: int = 0
    win_rate: float = 0.0
    profit_loss: float = 0.0


@dataclass(slots=True)
class PerformanceMetrics:
    """All-time closed-trade performance of one bot plus open exposure."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate_pct: float = 0.0
    total_profit_loss: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown_pct: float = 0.0
    current_drawdown_pct: float = 0.0
    daily_profit_loss: float = 0.0
    open_positions: int = 0
    margin_usage_pct: float = 0.0
    alerts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BotStatus:
    """Read model exposed to the dashboard layer."""

    id: str
    is_active: bool
    last_check: str | None
    last_trade: str | None
    daily_stats: DailyStats
    errors: list[str] = field(default_factory=list)
    performance: PerformanceMetrics | None = None


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
