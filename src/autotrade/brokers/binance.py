"""Binance USDT-M futures broker session."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import (  # type: ignore[import-untyped]
    BinanceAPIException,
    BinanceRequestException,
)
from requests.exceptions import RequestException

from autotrade.brokers.base import BrokerCredentials
from autotrade.errors import BrokerUnavailable, SymbolNotFound
from autotrade.types import Bar, Direction, Timeframe
from autotrade.utils.logging import get_logger

_INVALID_SYMBOL_CODE = -1121


class BinanceBroker:
    """Broker session over python-binance.

    Order ids are returned as ``"{symbol}:{orderId}"`` so a position can be
    closed from the trade id alone, also after a restart.
    """

    _INTERVAL_MAP = {
        Timeframe.M1: Client.KLINE_INTERVAL_1MINUTE,
        Timeframe.M5: Client.KLINE_INTERVAL_5MINUTE,
        Timeframe.M15: Client.KLINE_INTERVAL_15MINUTE,
        Timeframe.M30: Client.KLINE_INTERVAL_30MINUTE,
        Timeframe.H1: Client.KLINE_INTERVAL_1HOUR,
        Timeframe.H4: Client.KLINE_INTERVAL_4HOUR,
        Timeframe.D1: Client.KLINE_INTERVAL_1DAY,
    }

    def __init__(self, *, testnet: bool = True, quote_asset: str = "USDT") -> None:
        self._testnet = testnet
        self._quote_asset = quote_asset
        self._client: Client | None = None
        self._step_sizes: dict[str, float] = {}
        self._logger = get_logger("autotrade.brokers.binance")

    def connect(self, credentials: BrokerCredentials) -> None:
        try:
            self._client = Client(
                api_key=credentials.api_key or None,
                api_secret=credentials.api_secret or None,
                testnet=self._testnet or credentials.is_demo,
            )
        except (BinanceAPIException, BinanceRequestException, RequestException) as exc:
            self._client = None
            raise BrokerUnavailable(f"binance_connect_failed: {exc}") from exc
        self._logger.info("broker_connected", testnet=self._testnet or credentials.is_demo)

    def is_connected(self) -> bool:
        return self._client is not None

    def get_candles(self, symbol: str, timeframe: Timeframe, count: int) -> list[Bar]:
        interval = self._INTERVAL_MAP[Timeframe.parse(timeframe)]
        rows = self._call("futures_klines", symbol=symbol, interval=interval, limit=count)
        bars = []
        for row in rows:
            bars.append(
                Bar(
                    open_time=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                )
            )
        return bars

    def get_current_price(self, symbol: str) -> float:
        payload = self._call("futures_symbol_ticker", symbol=symbol)
        return float(payload["price"])

    def get_account_balance(self) -> float:
        rows = self._call("futures_account_balance")
        for row in rows:
            if row.get("asset") == self._quote_asset:
                return float(row.get("balance", 0.0))
        return 0.0

    def place_order(
        self,
        symbol: str,
        side: Direction,
        quantity: float,
        stop_loss: float,
        take_profit: float,
    ) -> str:
        entry_side = "BUY" if side == "LONG" else "SELL"
        exit_side = "SELL" if side == "LONG" else "BUY"
        qty = self._round_quantity(symbol, quantity)
        order = self._call(
            "futures_create_order",
            symbol=symbol,
            side=entry_side,
            type="MARKET",
            quantity=qty,
        )
        order_id = f"{symbol}:{order['orderId']}"
        # The entry is filled from here on; losing its id would orphan a live position.
        for order_type, price in (("STOP_MARKET", stop_loss), ("TAKE_PROFIT_MARKET", take_profit)):
            if price <= 0:
                continue
            try:
                self._call(
                    "futures_create_order",
                    symbol=symbol,
                    side=exit_side,
                    type=order_type,
                    stopPrice=_format_price(price),
                    closePosition=True,
                )
            except (BrokerUnavailable, SymbolNotFound) as exc:
                self._logger.critical(
                    "protection_order_failed",
                    order_id=order_id,
                    symbol=symbol,
                    side=side,
                    quantity=qty,
                    order_type=order_type,
                    stop_price=price,
                    error=str(exc),
                )
        return order_id

    def close_position(self, trade_id: str) -> None:
        symbol = trade_id.split(":", 1)[0]
        positions = self._call("futures_position_information", symbol=symbol)
        amount = sum(float(row.get("positionAmt", 0.0)) for row in positions)
        if amount != 0:
            self._call(
                "futures_create_order",
                symbol=symbol,
                side="SELL" if amount > 0 else "BUY",
                type="MARKET",
                quantity=abs(amount),
                reduceOnly=True,
            )
        self._call("futures_cancel_all_open_orders", symbol=symbol)

    def _round_quantity(self, symbol: str, quantity: float) -> float:
        if symbol not in self._step_sizes:
            info = self._call("futures_exchange_info")
            for entry in info.get("symbols", []):
                for flt in entry.get("filters", []):
                    if flt.get("filterType") == "LOT_SIZE":
                        self._step_sizes[entry["symbol"]] = float(flt["stepSize"])
            if symbol not in self._step_sizes:
                raise SymbolNotFound(f"symbol_not_found: {symbol}")
        step = self._step_sizes[symbol]
        if step <= 0:
            return quantity
        precision = max(0, int(round(-math.log10(step))))
        return round(math.floor(quantity / step) * step, precision)

    def _call(self, method: str, **kwargs: Any) -> Any:
        if self._client is None:
            raise BrokerUnavailable("broker_session_not_connected")
        try:
            return getattr(self._client, method)(**kwargs)
        except BinanceAPIException as exc:
            if exc.code == _INVALID_SYMBOL_CODE:
                raise SymbolNotFound(f"symbol_not_found: {kwargs.get('symbol')}") from exc
            self._logger.warning("binance_api_error", method=method, code=exc.code, error=str(exc))
            raise BrokerUnavailable(f"binance_api_error: {exc.code} {exc.message}") from exc
        except (BinanceRequestException, RequestException) as exc:
            self._logger.warning("binance_request_failed", method=method, error=str(exc))
            raise BrokerUnavailable(f"binance_request_failed: {exc}") from exc


def _format_price(price: float) -> str:
    return f"{price:.8f}".rstrip("0").rstrip(".")
