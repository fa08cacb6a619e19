"""Per-bot risk limits and emergency stop."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from autotrade.errors import TradeRejected
from autotrade.persistence.store import BotRepository
from autotrade.risk.sizing import compute_position_size
from autotrade.types import AccountState, Bot, RiskDecision, Signal, Trade, parse_iso
from autotrade.utils.logging import get_logger, log_risk_event


class RiskGatekeeper:
    """Rule-based gate between a signal and the trade executor.

    Checks run in order: position size, daily realised loss, drawdown. The
    first breach rejects the trade and stops the bot.
    """

    def __init__(self, repository: BotRepository, *, timezone_name: str = "UTC") -> None:
        self._repository = repository
        self._tz = ZoneInfo(timezone_name)
        self._logger = get_logger("autotrade.risk.rules")

    def validate(self, bot: Bot, signal: Signal, account: AccountState) -> RiskDecision:
        limits = bot.risk
        try:
            qty = compute_position_size(
                account.balance,
                limits.max_risk_per_trade_pct,
                signal.entry_price,
                signal.stop_loss,
            )
        except TradeRejected as exc:
            return RiskDecision(approved=False, reason=str(exc))

        reason: str | None = None
        if qty > limits.max_position_size:
            reason = f"max_position_size_exceeded: {qty:.8g} > {limits.max_position_size:.8g}"
        else:
            now = account.now or datetime.now(timezone.utc)
            daily_pnl = self.daily_realized_pnl(account.trades, now)
            if daily_pnl < 0 and abs(daily_pnl) >= limits.max_daily_loss:
                reason = f"max_daily_loss_reached: {abs(daily_pnl):.2f} >= {limits.max_daily_loss:.2f}"
            else:
                drawdown = current_drawdown_pct(account.balance, account.trades)
                if drawdown >= limits.max_drawdown_pct:
                    reason = f"max_drawdown_reached: {drawdown:.2f}% >= {limits.max_drawdown_pct:.2f}%"

        if reason is not None:
            self.emergency_stop(bot.id, reason)
            return RiskDecision(approved=False, quantity=qty, reason=reason, breach=True)
        return RiskDecision(approved=True, quantity=qty)

    def emergency_stop(self, bot_id: str, reason: str) -> None:
        """Deactivate the bot and record why. Open positions are left to the owner."""
        self._repository.update_bot(
            bot_id,
            {
                "is_active": False,
                "stop_reason": reason,
                "stopped_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        log_risk_event(
            self._logger,
            event_type="emergency_stop",
            action="deactivate_bot",
            bot_id=bot_id,
            reason=reason,
        )

    def day_start(self, now: datetime) -> datetime:
        """Local midnight for ``now`` in the configured risk timezone."""
        return local_day_start(now, self._tz)

    def daily_realized_pnl(self, trades: Sequence[Trade], now: datetime) -> float:
        start = self.day_start(now)
        total = 0.0
        for trade in trades:
            if trade.closed_at is None or trade.profit_loss is None:
                continue
            if parse_iso(trade.closed_at) >= start:
                total += trade.profit_loss
        return total


def local_day_start(now: datetime, tz: tzinfo) -> datetime:
    return now.astimezone(tz).replace(hour=0, minute=0, second=0, microsecond=0)


def equity_curve(balance: float, trades: Sequence[Trade]) -> list[float]:
    """Equity after each closed trade, in close order, ending at ``balance``.

    The first point is ``balance`` minus all realised P&L.
    """
    closed = sorted(
        (t for t in trades if t.closed_at is not None and t.profit_loss is not None),
        key=lambda t: parse_iso(t.closed_at or ""),
    )
    if not closed:
        return []
    equity = balance - sum(t.profit_loss or 0.0 for t in closed)
    points = [equity]
    for trade in closed:
        equity += trade.profit_loss or 0.0
        points.append(equity)
    return points


def current_drawdown_pct(balance: float, trades: Sequence[Trade]) -> float:
    """Drawdown of the latest equity point from its running peak, in percent."""
    points = equity_curve(balance, trades)
    if not points:
        return 0.0
    return _drawdown_pct(max(points), points[-1])


def max_drawdown_pct(balance: float, trades: Sequence[Trade]) -> float:
    """Deepest peak-to-trough drop of the equity curve, in percent."""
    worst = 0.0
    peak = None
    for equity in equity_curve(balance, trades):
        peak = equity if peak is None else max(peak, equity)
        worst = max(worst, _drawdown_pct(peak, equity))
    return worst


def _drawdown_pct(peak: float, equity: float) -> float:
    if peak <= 0:
        return 100.0 if equity < peak else 0.0
    return max(0.0, (peak - equity) / peak * 100.0)


def check_exit(trade: Trade, last_price: float) -> str | None:
    """Return ``stop_loss`` / ``take_profit`` when the price crossed a protective level."""
    if trade.side == "LONG":
        if trade.stop_loss > 0 and last_price <= trade.stop_loss:
            return "stop_loss"
        if trade.take_profit > 0 and last_price >= trade.take_profit:
            return "take_profit"
    else:
        if trade.stop_loss > 0 and last_price >= trade.stop_loss:
            return "stop_loss"
        if trade.take_profit > 0 and last_price <= trade.take_profit:
            return "take_profit"
    return None
