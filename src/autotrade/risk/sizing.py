"""Risk-per-trade position sizing."""

from __future__ import annotations

from autotrade.errors import TradeRejected


def compute_position_size(
    balance: float,
    risk_pct: float,
    entry_price: float,
    stop_loss: float,
) -> float:
    """Quantity such that hitting the stop loses ``risk_pct`` percent of ``balance``.

    quantity = (balance * risk_pct / 100) / |entry_price - stop_loss|
    """
    if balance <= 0:
        raise TradeRejected("non_positive_balance")
    if risk_pct <= 0:
        raise TradeRejected("non_positive_risk_pct")
    if entry_price <= 0 or stop_loss <= 0:
        raise TradeRejected("non_positive_price")
    distance = abs(entry_price - stop_loss)
    if distance == 0:
        raise TradeRejected("zero_stop_distance")
    risk_amount = balance * (risk_pct / 100.0)
    return float(risk_amount / distance)
