"""Broker session contract consumed by the market data gateway and executor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from autotrade.types import Bar, Bot, Direction, Timeframe


@dataclass(slots=True)
class BrokerCredentials:
    api_key: str
    api_secret: str
    is_demo: bool = True


class QuoteFeed(Protocol):
    """Read-only price source."""

    def get_candles(self, symbol: str, timeframe: Timeframe, count: int) -> list[Bar]:
        """Return up to ``count`` most recent bars, ascending by open time."""

    def get_current_price(self, symbol: str) -> float:
        """Return the latest traded price."""


class BrokerSession(QuoteFeed, Protocol):
    """Authenticated broker session.

    Implementations raise ``BrokerUnavailable`` (or ``SymbolNotFound``) for
    transport and API failures.
    """

    def connect(self, credentials: BrokerCredentials) -> None:
        """Authenticate the session."""

    def is_connected(self) -> bool:
        """Whether the session is usable."""

    def place_order(
        self,
        symbol: str,
        side: Direction,
        quantity: float,
        stop_loss: float,
        take_profit: float,
    ) -> str:
        """Place a market order with protective orders, return the order id."""

    def close_position(self, trade_id: str) -> None:
        """Flatten the position opened by order ``trade_id``."""

    def get_account_balance(self) -> float:
        """Return the account balance in quote currency."""


BrokerFactory = Callable[[Bot], BrokerSession]
