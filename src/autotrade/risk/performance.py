"""Per-bot performance figures and threshold alerts."""

from __future__ import annotations

from collections.abc import Sequence

from autotrade.risk.rules import current_drawdown_pct, max_drawdown_pct
from autotrade.types import PerformanceMetrics, RiskSettings, Trade


def compute_performance(
    trades: Sequence[Trade],
    *,
    starting_equity: float,
    daily_profit_loss: float = 0.0,
) -> PerformanceMetrics:
    """Aggregate all closed trades of one bot.

    Equity is ``starting_equity`` plus realised P&L; drawdowns are measured on
    that curve and margin usage is open notional over current equity.
    """
    closed = [t for t in trades if t.closed_at is not None and t.profit_loss is not None]
    open_trades = [t for t in trades if t.is_open]
    wins = [t.profit_loss or 0.0 for t in closed if (t.profit_loss or 0.0) > 0]
    losses = [t.profit_loss or 0.0 for t in closed if (t.profit_loss or 0.0) < 0]

    total_pnl = sum(t.profit_loss or 0.0 for t in closed)
    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))
    equity = starting_equity + total_pnl
    open_notional = sum(t.quantity * t.entry_price for t in open_trades)

    return PerformanceMetrics(
        total_trades=len(closed),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate_pct=len(wins) / len(closed) * 100.0 if closed else 0.0,
        total_profit_loss=total_pnl,
        average_win=gross_profit / len(wins) if wins else 0.0,
        average_loss=gross_loss / len(losses) if losses else 0.0,
        profit_factor=gross_profit / gross_loss if gross_loss else 0.0,
        max_drawdown_pct=max_drawdown_pct(equity, closed),
        current_drawdown_pct=current_drawdown_pct(equity, closed),
        daily_profit_loss=daily_profit_loss,
        open_positions=len(open_trades),
        margin_usage_pct=open_notional / equity * 100.0 if equity > 0 else 0.0,
    )


def performance_alerts(
    metrics: PerformanceMetrics,
    limits: RiskSettings,
    *,
    min_win_rate_pct: float,
    max_margin_usage_pct: float,
) -> list[str]:
    alerts: list[str] = []
    if metrics.max_drawdown_pct >= limits.max_drawdown_pct:
        alerts.append(
            f"MAX_DRAWDOWN: {metrics.max_drawdown_pct:.2f}% >= {limits.max_drawdown_pct:.2f}%"
        )
    # no closed trades yet means no win rate to judge
    if metrics.total_trades and metrics.win_rate_pct < min_win_rate_pct:
        alerts.append(f"LOW_WIN_RATE: {metrics.win_rate_pct:.2f}% < {min_win_rate_pct:.2f}%")
    if metrics.daily_profit_loss < 0 and abs(metrics.daily_profit_loss) >= limits.max_daily_loss:
        alerts.append(
            f"MAX_DAILY_LOSS: {abs(metrics.daily_profit_loss):.2f} >= {limits.max_daily_loss:.2f}"
        )
    if metrics.margin_usage_pct >= max_margin_usage_pct:
        alerts.append(
            f"HIGH_MARGIN_USAGE: {metrics.margin_usage_pct:.2f}% >= {max_margin_usage_pct:.2f}%"
        )
    return alerts
