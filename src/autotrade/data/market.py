"""Market data gateway over an authenticated broker session."""

from __future__ import annotations

from collections.abc import Sequence

import pandas as pd  # type: ignore[import-untyped]

from autotrade.brokers.base import BrokerSession
from autotrade.errors import BrokerUnavailable
from autotrade.types import Bar, Timeframe

_FRAME_COLUMNS = ["open_time", "open", "high", "low", "close", "volume"]


class MarketDataGateway:
    """Fetch recent bars for one symbol/timeframe.

    No retries here: a failed fetch ends the cycle and the next scheduled
    tick tries again.
    """

    def __init__(self, broker: BrokerSession) -> None:
        self._broker = broker

    def fetch(self, symbol: str, timeframe: Timeframe, lookback: int) -> list[Bar]:
        if lookback <= 0:
            raise ValueError("lookback_must_be_positive")
        if not self._broker.is_connected():
            raise BrokerUnavailable("broker_session_not_connected")
        try:
            bars = self._broker.get_candles(symbol, Timeframe.parse(timeframe), lookback)
        except BrokerUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001 - foreign broker errors map to one type.
            raise BrokerUnavailable(f"candles_fetch_failed: {exc}") from exc
        return normalize_bars(bars)[-lookback:]


def normalize_bars(bars: Sequence[Bar]) -> list[Bar]:
    """Sort ascending by open time and keep the last bar for duplicate times."""
    by_time: dict[object, Bar] = {}
    for bar in bars:
        by_time[bar.open_time] = bar
    return [by_time[key] for key in sorted(by_time)]  # type: ignore[type-var]


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    """Convert bars to an OHLCV dataframe for indicator work."""
    if not bars:
        return pd.DataFrame(columns=_FRAME_COLUMNS)
    df = pd.DataFrame(
        {
            "open_time": [bar.open_time for bar in bars],
            "open": [bar.open for bar in bars],
            "high": [bar.high for bar in bars],
            "low": [bar.low for bar in bars],
            "close": [bar.close for bar in bars],
            "volume": [bar.volume for bar in bars],
        }
    )
    numeric_cols = ["open", "high", "low", "close", "volume"]
    for col in numeric_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df.dropna(subset=["close"]).reset_index(drop=True)
