"""Paper broker session with persistent local state."""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from autotrade.brokers.base import BrokerCredentials, QuoteFeed
from autotrade.errors import BrokerUnavailable
from autotrade.types import Bar, Direction, Timeframe


@dataclass(slots=True)
class _PaperPosition:
    symbol: str
    side: Direction
    qty: float
    entry_price: float
    stop_loss: float
    take_profit: float
    opened_at: str


@dataclass(slots=True)
class _PaperState:
    balance: float
    initial_balance: float
    positions: dict[str, _PaperPosition] = field(default_factory=dict)


class PaperBroker:
    """Simulated fills against a live or recorded quote feed."""

    def __init__(
        self,
        feed: QuoteFeed,
        state_dir: Path | None = None,
        *,
        slippage_bps: float = 2.0,
        initial_balance: float = 10_000.0,
    ) -> None:
        self._feed = feed
        self._slippage_bps = slippage_bps
        self._state_file = state_dir / "paper_state.json" if state_dir is not None else None
        self._lock = threading.Lock()
        self._connected = False
        self._state = self._load_state(initial_balance)

    def connect(self, credentials: BrokerCredentials) -> None:
        self._connected = True

    def is_connected(self) -> bool:
        return self._connected

    def get_candles(self, symbol: str, timeframe: Timeframe, count: int) -> list[Bar]:
        self._require_connected()
        return self._feed.get_candles(symbol, timeframe, count)

    def get_current_price(self, symbol: str) -> float:
        self._require_connected()
        return self._feed.get_current_price(symbol)

    def get_account_balance(self) -> float:
        self._require_connected()
        with self._lock:
            return self._state.balance

    def place_order(
        self,
        symbol: str,
        side: Direction,
        quantity: float,
        stop_loss: float,
        take_profit: float,
    ) -> str:
        self._require_connected()
        if quantity <= 0:
            raise ValueError("qty_must_be_positive")
        price = self._feed.get_current_price(symbol)
        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._state.positions[order_id] = _PaperPosition(
                symbol=symbol,
                side=side,
                qty=float(quantity),
                entry_price=self._fill_price(price, side, opening=True),
                stop_loss=float(stop_loss),
                take_profit=float(take_profit),
                opened_at=datetime.now(timezone.utc).isoformat(),
            )
            self._persist()
        return order_id

    def close_position(self, trade_id: str) -> None:
        self._require_connected()
        with self._lock:
            position = self._state.positions.get(trade_id)
        if position is None:
            raise BrokerUnavailable(f"unknown_position: {trade_id}")
        price = self._feed.get_current_price(position.symbol)
        with self._lock:
            fill = self._fill_price(price, position.side, opening=False)
            sign = 1.0 if position.side == "LONG" else -1.0
            self._state.balance += (fill - position.entry_price) * position.qty * sign
            self._state.positions.pop(trade_id, None)
            self._persist()

    def open_positions(self) -> dict[str, _PaperPosition]:
        with self._lock:
            return dict(self._state.positions)

    def _fill_price(self, price: float, side: Direction, *, opening: bool) -> float:
        # Buying pays up, selling gives up.
        buying = (side == "LONG") == opening
        adj = self._slippage_bps / 10_000.0
        return float(price * (1.0 + adj if buying else 1.0 - adj))

    def _require_connected(self) -> None:
        if not self._connected:
            raise BrokerUnavailable("broker_session_not_connected")

    def _load_state(self, initial_balance: float) -> _PaperState:
        if self._state_file is None or not self._state_file.exists():
            return _PaperState(balance=initial_balance, initial_balance=initial_balance)

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        positions = {
            order_id: _PaperPosition(**payload)
            for order_id, payload in (raw.get("positions") or {}).items()
            if isinstance(payload, dict)
        }
        return _PaperState(
            balance=float(raw.get("balance", initial_balance)),
            initial_balance=float(raw.get("initial_balance", initial_balance)),
            positions=positions,
        )

    def _persist(self) -> None:
        if self._state_file is None:
            return
        payload: dict[str, Any] = {
            "balance": self._state.balance,
            "initial_balance": self._state.initial_balance,
            "positions": {key: asdict(pos) for key, pos in self._state.positions.items()},
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.write_text(serialized, encoding="utf-8")
