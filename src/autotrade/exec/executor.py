"""Order placement and trade bookkeeping."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from autotrade.brokers.base import BrokerSession
from autotrade.errors import PersistenceFailure, TradeRejected
from autotrade.lock.store import LockStore
from autotrade.persistence.store import BotRepository
from autotrade.risk.sizing import compute_position_size
from autotrade.types import Bot, Signal, Trade
from autotrade.utils.logging import get_logger, log_order_execution

POSITION_KEY_PREFIX = "position:"


def position_key(bot_id: str) -> str:
    return f"{POSITION_KEY_PREFIX}{bot_id}"


class TradeExecutor:
    """Open and close positions for one broker session.

    A placed order is never forgotten: if the trade record cannot be written
    the open-positions cache still gets the entry and the failure is logged
    at critical with the full order context for manual reconciliation.
    """

    def __init__(
        self,
        broker: BrokerSession,
        repository: BotRepository,
        cache: LockStore,
        *,
        position_cache_ttl: int = 7 * 24 * 3600,
    ) -> None:
        self._broker = broker
        self._repository = repository
        self._cache = cache
        self._position_cache_ttl = position_cache_ttl
        self._logger = get_logger("autotrade.exec.executor")

    def open(
        self,
        bot: Bot,
        signal: Signal,
        *,
        quantity: float | None = None,
        lock_token: str | None = None,
    ) -> Trade:
        """Place an entry order for ``signal`` and record the trade."""
        if not bot.risk.allow_pyramiding:
            existing = self._repository.get_open_trade(bot.id)
            if existing is not None:
                raise TradeRejected(f"position_already_open: {existing.id}")
            # A fill whose trade record never landed is only known to the cache.
            cached = self.cached_position(bot.id)
            if cached is not None:
                raise TradeRejected(f"position_already_open: {cached.get('id')}")

        if quantity is None:
            quantity = compute_position_size(
                self._broker.get_account_balance(),
                bot.risk.max_risk_per_trade_pct,
                signal.entry_price,
                signal.stop_loss,
            )
        if quantity <= 0:
            raise TradeRejected("qty_must_be_positive")

        entry_price = self._broker.get_current_price(bot.symbol)
        order_id = self._broker.place_order(
            bot.symbol,
            signal.direction,
            quantity,
            signal.stop_loss,
            signal.take_profit,
        )
        trade = Trade(
            id=order_id,
            bot_id=bot.id,
            symbol=bot.symbol,
            side=signal.direction,
            entry_price=float(entry_price),
            quantity=float(quantity),
            stop_loss=float(signal.stop_loss),
            take_profit=float(signal.take_profit),
            opened_at=datetime.now(timezone.utc).isoformat(),
            lock_token=lock_token,
        )
        log_order_execution(
            self._logger,
            bot_id=bot.id,
            symbol=bot.symbol,
            side=signal.direction,
            quantity=trade.quantity,
            price=trade.entry_price,
            order_id=order_id,
            status="filled",
        )

        persist_error: Exception | None = None
        try:
            trade = self._repository.create_trade(trade)
        except Exception as exc:  # noqa: BLE001 - the order is live, keep tracking it.
            persist_error = exc
            self._logger.critical(
                "trade_persist_failed_after_order",
                error=str(exc),
                **_order_context(trade),
            )
        self._cache_position(trade)

        if persist_error is not None:
            raise PersistenceFailure(f"trade_persist_failed: {order_id}") from persist_error
        return trade

    def close(self, trade_id: str) -> Trade:
        """Flatten an open trade at the current price and record the result."""
        trade = self._repository.get_trade(trade_id)
        if trade is None:
            raise TradeRejected(f"trade_not_found: {trade_id}")
        if not trade.is_open:
            raise TradeRejected(f"trade_already_closed: {trade_id}")

        exit_price = float(self._broker.get_current_price(trade.symbol))
        self._broker.close_position(trade.id)
        sign = 1.0 if trade.side == "LONG" else -1.0
        profit_loss = (exit_price - trade.entry_price) * trade.quantity * sign
        closed_at = datetime.now(timezone.utc).isoformat()

        try:
            closed = self._repository.close_trade(trade.id, exit_price, profit_loss, closed_at)
        except PersistenceFailure as exc:
            self._logger.critical(
                "trade_close_persist_failed",
                error=str(exc),
                exit_price=exit_price,
                profit_loss=profit_loss,
                closed_at=closed_at,
                **_order_context(trade),
            )
            raise

        log_order_execution(
            self._logger,
            bot_id=trade.bot_id,
            symbol=trade.symbol,
            side="SELL" if trade.side == "LONG" else "BUY",
            quantity=trade.quantity,
            price=exit_price,
            order_id=trade.id,
            status="closed",
            profit_loss=round(profit_loss, 8),
        )
        self._drop_position(trade.bot_id)
        return closed

    def close_open_trade(self, bot_id: str) -> Trade:
        trade = self._repository.get_open_trade(bot_id)
        if trade is None:
            raise TradeRejected(f"no_open_position: {bot_id}")
        return self.close(trade.id)

    def cached_position(self, bot_id: str) -> dict[str, Any] | None:
        raw = self._cache.get(position_key(bot_id))
        return json.loads(raw) if raw else None

    def open_positions(self) -> dict[str, dict[str, Any]]:
        """Cached open positions keyed by bot id."""
        positions: dict[str, dict[str, Any]] = {}
        for key in self._cache.keys(POSITION_KEY_PREFIX):
            raw = self._cache.get(key)
            if raw:
                positions[key[len(POSITION_KEY_PREFIX):]] = json.loads(raw)
        return positions

    def _cache_position(self, trade: Trade) -> None:
        try:
            self._cache.set_with_ttl(
                position_key(trade.bot_id),
                json.dumps(asdict(trade), ensure_ascii=True),
                self._position_cache_ttl,
            )
        except Exception as exc:  # noqa: BLE001 - the trade record is already the source of truth.
            self._logger.critical(
                "position_cache_write_failed",
                error=str(exc),
                **_order_context(trade),
            )

    def _drop_position(self, bot_id: str) -> None:
        try:
            self._cache.delete(position_key(bot_id))
        except Exception as exc:  # noqa: BLE001 - stale cache entries expire on their own.
            self._logger.error("position_cache_delete_failed", bot_id=bot_id, error=str(exc))


def _order_context(trade: Trade) -> dict[str, Any]:
    return {
        "order_id": trade.id,
        "bot_id": trade.bot_id,
        "symbol": trade.symbol,
        "side": trade.side,
        "quantity": trade.quantity,
        "entry_price": trade.entry_price,
        "stop_loss": trade.stop_loss,
        "take_profit": trade.take_profit,
        "opened_at": trade.opened_at,
    }
