"""Bot and trade persistence behind a small repository interface."""

from __future__ import annotations

import dataclasses
import json
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, TextIO

from autotrade.errors import BotNotFound, PersistenceFailure, TradeRejected
from autotrade.types import Bot, RiskSettings, Timeframe, Trade, parse_iso

_BOT_FIELDS = {f.name for f in dataclasses.fields(Bot)} - {"id"}
# Never equal to a real file stamp; forces the next call to re-read.
_STALE = (-1, -1, -1)


class BotRepository(Protocol):
    """Persistence consumed by the core."""

    def get_active_bots(self) -> list[Bot]: ...

    def get_bot(self, bot_id: str) -> Bot: ...

    def list_bots(self) -> list[Bot]: ...

    def create_bot(self, bot: Bot) -> Bot: ...

    def update_bot(self, bot_id: str, fields: dict[str, Any]) -> Bot: ...

    def create_trade(self, trade: Trade) -> Trade: ...

    def close_trade(
        self,
        trade_id: str,
        exit_price: float,
        profit_loss: float,
        closed_at: str,
    ) -> Trade: ...

    def get_trade(self, trade_id: str) -> Trade | None: ...

    def get_open_trade(self, bot_id: str) -> Trade | None: ...

    def get_trades_since(self, bot_id: str, since: datetime) -> list[Trade]: ...

    def list_trades(self, bot_id: str | None = None) -> list[Trade]: ...


class MemoryRepository:
    """Thread-safe in-process repository. Returned records are copies."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._bots: dict[str, Bot] = {}
        self._trades: dict[str, Trade] = {}

    def get_active_bots(self) -> list[Bot]:
        with self._lock:
            return [dataclasses.replace(bot) for bot in self._bots.values() if bot.is_active]

    def get_bot(self, bot_id: str) -> Bot:
        with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                raise BotNotFound(f"bot_not_found: {bot_id}")
            return dataclasses.replace(bot)

    def list_bots(self) -> list[Bot]:
        with self._lock:
            return [dataclasses.replace(bot) for bot in self._bots.values()]

    def create_bot(self, bot: Bot) -> Bot:
        with self._lock:
            if bot.id in self._bots:
                raise PersistenceFailure(f"duplicate_bot_id: {bot.id}")
            if not bot.created_at:
                bot = dataclasses.replace(bot, created_at=_now_iso())
            self._bots[bot.id] = dataclasses.replace(bot)
            self._flush()
            return dataclasses.replace(bot)

    def update_bot(self, bot_id: str, fields: dict[str, Any]) -> Bot:
        unknown = set(fields) - _BOT_FIELDS
        if unknown:
            raise ValueError(f"unknown_bot_fields: {','.join(sorted(unknown))}")
        with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                raise BotNotFound(f"bot_not_found: {bot_id}")
            updated = dataclasses.replace(bot, **fields)
            self._bots[bot_id] = updated
            self._flush()
            return dataclasses.replace(updated)

    def create_trade(self, trade: Trade) -> Trade:
        with self._lock:
            if trade.id in self._trades:
                raise PersistenceFailure(f"duplicate_trade_id: {trade.id}")
            self._trades[trade.id] = dataclasses.replace(trade)
            self._flush()
            return dataclasses.replace(trade)

    def close_trade(
        self,
        trade_id: str,
        exit_price: float,
        profit_loss: float,
        closed_at: str,
    ) -> Trade:
        with self._lock:
            trade = self._trades.get(trade_id)
            if trade is None:
                raise TradeRejected(f"trade_not_found: {trade_id}")
            if not trade.is_open:
                raise TradeRejected(f"trade_already_closed: {trade_id}")
            closed = dataclasses.replace(
                trade,
                exit_price=float(exit_price),
                profit_loss=float(profit_loss),
                closed_at=closed_at,
            )
            self._trades[trade_id] = closed
            self._flush()
            return dataclasses.replace(closed)

    def get_trade(self, trade_id: str) -> Trade | None:
        with self._lock:
            trade = self._trades.get(trade_id)
            return dataclasses.replace(trade) if trade else None

    def get_open_trade(self, bot_id: str) -> Trade | None:
        with self._lock:
            open_trades = [t for t in self._trades.values() if t.bot_id == bot_id and t.is_open]
            if not open_trades:
                return None
            latest = max(open_trades, key=lambda t: t.opened_at)
            return dataclasses.replace(latest)

    def get_trades_since(self, bot_id: str, since: datetime) -> list[Trade]:
        """Trades of ``bot_id`` opened or closed at/after ``since``, oldest first."""
        with self._lock:
            rows = [
                dataclasses.replace(t)
                for t in self._trades.values()
                if t.bot_id == bot_id
                and (
                    parse_iso(t.opened_at) >= since
                    or (t.closed_at is not None and parse_iso(t.closed_at) >= since)
                )
            ]
        return sorted(rows, key=lambda t: t.opened_at)

    def list_trades(self, bot_id: str | None = None) -> list[Trade]:
        with self._lock:
            rows = [
                dataclasses.replace(t)
                for t in self._trades.values()
                if bot_id is None or t.bot_id == bot_id
            ]
        return sorted(rows, key=lambda t: t.opened_at)

    def _flush(self) -> None:
        """Hook for durable subclasses; called under the lock after each mutation."""


class JsonRepository(MemoryRepository):
    """MemoryRepository persisted to one JSON file.

    The scheduler process and one-shot CLI commands share the file, so every
    call re-reads it under an exclusive ``state.lock`` file lock and every
    mutation is written back before that lock is released.
    """

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self._path = data_dir / "state.json"
        self._file_lock = _StateFileLock(data_dir / "state.lock")
        self._stamp: tuple[int, int, int] | None = None
        self._depth = 0
        self.list_bots()

    @contextmanager
    def _synced(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with self._file_lock:
                self._depth = 1
                try:
                    self._reload()
                    yield
                finally:
                    self._depth = 0

    def _reload(self) -> None:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            stamp = None
        except OSError as exc:
            raise PersistenceFailure(f"state_load_failed: {exc}") from exc
        else:
            stamp = (stat.st_ino, stat.st_mtime_ns, stat.st_size)
        if stamp == self._stamp:
            return

        bots: dict[str, Bot] = {}
        trades: dict[str, Trade] = {}
        if stamp is not None:
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                for payload in raw.get("bots", []):
                    bot = _bot_from_dict(payload)
                    bots[bot.id] = bot
                for payload in raw.get("trades", []):
                    trade = Trade(**payload)
                    trades[trade.id] = trade
            except (OSError, ValueError, TypeError, KeyError) as exc:
                raise PersistenceFailure(f"state_load_failed: {exc}") from exc
        self._bots = bots
        self._trades = trades
        self._stamp = stamp

    def _flush(self) -> None:
        payload = {
            "bots": [_bot_to_dict(bot) for bot in self._bots.values()],
            "trades": [dataclasses.asdict(trade) for trade in self._trades.values()],
        }
        tmp_path = self._path.with_suffix(".json.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
            stat = self._path.stat()
        except OSError as exc:
            # Force a re-read so memory never runs ahead of the file.
            self._stamp = _STALE
            raise PersistenceFailure(f"state_write_failed: {exc}") from exc
        self._stamp = (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def get_active_bots(self) -> list[Bot]:
        with self._synced():
            return super().get_active_bots()

    def get_bot(self, bot_id: str) -> Bot:
        with self._synced():
            return super().get_bot(bot_id)

    def list_bots(self) -> list[Bot]:
        with self._synced():
            return super().list_bots()

    def create_bot(self, bot: Bot) -> Bot:
        with self._synced():
            return super().create_bot(bot)

    def update_bot(self, bot_id: str, fields: dict[str, Any]) -> Bot:
        with self._synced():
            return super().update_bot(bot_id, fields)

    def create_trade(self, trade: Trade) -> Trade:
        with self._synced():
            return super().create_trade(trade)

    def close_trade(
        self,
        trade_id: str,
        exit_price: float,
        profit_loss: float,
        closed_at: str,
    ) -> Trade:
        with self._synced():
            return super().close_trade(trade_id, exit_price, profit_loss, closed_at)

    def get_trade(self, trade_id: str) -> Trade | None:
        with self._synced():
            return super().get_trade(trade_id)

    def get_open_trade(self, bot_id: str) -> Trade | None:
        with self._synced():
            return super().get_open_trade(bot_id)

    def get_trades_since(self, bot_id: str, since: datetime) -> list[Trade]:
        with self._synced():
            return super().get_trades_since(bot_id, since)

    def list_trades(self, bot_id: str | None = None) -> list[Trade]:
        with self._synced():
            return super().list_trades(bot_id)


class _StateFileLock:
    """Blocking exclusive lock on a side file, shared across processes."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh: TextIO | None = None

    def __enter__(self) -> "_StateFileLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")
        try:
            _lock_file(fh)
        except OSError as exc:
            fh.close()
            raise PersistenceFailure(f"state_lock_failed: {exc}") from exc
        self._fh = fh
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        fh = self._fh
        if fh is None:
            return
        self._fh = None
        try:
            _unlock_file(fh)
        finally:
            fh.close()


def _lock_file(fh: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_LOCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_EX)


def _unlock_file(fh: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _bot_to_dict(bot: Bot) -> dict[str, Any]:
    payload = dataclasses.asdict(bot)
    payload["timeframe"] = bot.timeframe.value
    return payload


def _bot_from_dict(payload: dict[str, Any]) -> Bot:
    data = dict(payload)
    data["timeframe"] = Timeframe.parse(data["timeframe"])
    data["risk"] = RiskSettings(**(data.get("risk") or {}))
    return Bot(**data)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
