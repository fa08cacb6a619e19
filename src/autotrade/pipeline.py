"""One evaluation cycle for one bot: data, strategy, review, risk, execution."""

from __future__ import annotations

import threading
from dataclasses import asdict
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Callable

from autotrade.ai.openrouter_client import RuleReviewer, SignalReviewer
from autotrade.ai.schemas import SignalSnapshot
from autotrade.brokers.base import BrokerCredentials, BrokerFactory, BrokerSession
from autotrade.config import Settings
from autotrade.data.market import MarketDataGateway
from autotrade.errors import (
    AIReviewError,
    BotNotFound,
    BrokerUnavailable,
    InvalidStrategyConfig,
    LockLost,
    PersistenceFailure,
    TradeRejected,
)
from autotrade.exec.executor import TradeExecutor
from autotrade.journal.store import JournalStore
from autotrade.lock.store import ExecutionLock, LockStore
from autotrade.persistence.store import BotRepository
from autotrade.risk.rules import RiskGatekeeper, check_exit
from autotrade.strategy.evaluator import StrategyEvaluator
from autotrade.types import AccountState, Bot, CycleResult
from autotrade.utils.logging import get_logger, log_trade_signal

# Statuses after which the bot record is left untouched.
_UNTOUCHED_STATUSES = {"locked", "lock_unavailable", "inactive"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BotPipeline:
    """Run one guarded cycle per call. ``run`` never raises."""

    def __init__(
        self,
        settings: Settings,
        *,
        repository: BotRepository,
        lock_store: LockStore,
        broker_factory: BrokerFactory,
        evaluator: StrategyEvaluator,
        journal: JournalStore,
        reviewer: SignalReviewer | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._lock_store = lock_store
        self._broker_factory = broker_factory
        self._evaluator = evaluator
        self._journal = journal
        self._reviewer = reviewer or RuleReviewer()
        self._clock = clock
        self._gatekeeper = RiskGatekeeper(repository, timezone_name=settings.risk_timezone)
        self._credentials = BrokerCredentials(
            api_key=settings.binance_api_key,
            api_secret=settings.binance_api_secret,
            is_demo=settings.is_paper_mode or settings.binance_testnet,
        )
        self._sessions: dict[str, BrokerSession] = {}
        self._sessions_lock = threading.Lock()
        self._logger = get_logger("autotrade.pipeline")

    def run(self, bot_id: str) -> CycleResult:
        started = perf_counter()
        result = CycleResult(bot_id=bot_id, status="unknown")

        try:
            bot = self._repository.get_bot(bot_id)
        except BotNotFound:
            result.warnings.append("bot_not_found")
            return self._finish(result, started, status="inactive")
        except PersistenceFailure as exc:
            self._logger.error("pipeline_bot_load_failed", bot_id=bot_id, error=str(exc))
            result.error = str(exc)
            return self._finish(result, started, status="persistence_failure")

        lock = ExecutionLock(
            self._lock_store,
            bot_id,
            bot.timeframe.lock_ttl(self._settings.lock_ttl_seconds),
        )
        if not lock.acquire():
            # A reachable store that refused the key means another run holds it.
            status = "locked" if self._lock_store.ping() else "lock_unavailable"
            self._logger.info("pipeline_skipped", bot_id=bot_id, reason=status)
            return self._finish(result, started, status=status)

        try:
            self._append("cycle_start", bot_id, {"symbol": bot.symbol, "timeframe": bot.timeframe.value})
            result.status = self._run_locked(bot_id, lock, result)
        except BotNotFound:
            result.status = "inactive"
        except LockLost as exc:
            result.error = str(exc)
            result.status = "lock_lost"
        except (BrokerUnavailable, InvalidStrategyConfig, TradeRejected, PersistenceFailure) as exc:
            result.error = str(exc)
            result.status = _error_status(exc)
            self._logger.warning(
                "pipeline_cycle_failed",
                bot_id=bot_id,
                status=result.status,
                error=str(exc),
            )
        except Exception as exc:  # noqa: BLE001 - one bad bot must not take down the tick.
            result.error = str(exc)
            result.status = "failed"
            self._logger.exception("pipeline_failed", bot_id=bot_id, error=str(exc))
        finally:
            if result.error is not None:
                self._append("error", bot_id, {"status": result.status, "error": result.error})
            self._record_outcome(bot_id, result)
            lock.release()

        return self._finish(result, started, status=result.status)

    def discard_session(self, bot_id: str) -> None:
        """Forget the cached broker session of a stopped bot."""
        with self._sessions_lock:
            self._sessions.pop(bot_id, None)

    def _run_locked(self, bot_id: str, lock: ExecutionLock, result: CycleResult) -> str:
        bot = self._repository.get_bot(bot_id)
        if not bot.is_active:
            return "inactive"

        broker = self._session_for(bot)
        bars = MarketDataGateway(broker).fetch(bot.symbol, bot.timeframe, self._settings.candle_lookback)
        if not bars:
            result.warnings.append("no_market_data")
            return "no_data"
        last_price = float(bars[-1].close)
        self._append(
            "market_data",
            bot_id,
            {"bars": len(bars), "last_price": last_price, "last_open_time": bars[-1].open_time.isoformat()},
        )

        signal = self._evaluator.evaluate(bot.strategy_id, bars)
        result.signal = signal
        if signal is not None:
            log_trade_signal(
                self._logger,
                bot_id=bot.id,
                symbol=bot.symbol,
                direction=signal.direction,
                strategy_id=signal.strategy_id,
                confidence=signal.confidence,
            )
            self._append("signal", bot_id, asdict(signal))

        executor = TradeExecutor(
            broker,
            self._repository,
            self._lock_store,
            position_cache_ttl=self._settings.position_cache_ttl_seconds,
        )

        open_trade = self._repository.get_open_trade(bot.id)
        if open_trade is not None:
            exit_reason = check_exit(open_trade, last_price)
            if exit_reason is None and signal is not None and signal.direction != open_trade.side:
                exit_reason = "opposite_signal"
            if exit_reason is not None:
                lock.ensure_held()
                closed = executor.close(open_trade.id)
                result.trade = closed
                self._append("position_close", bot_id, {"reason": exit_reason, **asdict(closed)})
                return "closed"
            if not self._may_add_position(bot):
                return "position_open"

        if signal is None:
            return "no_signal"

        scale = 1.0
        if self._settings.ai_review_enabled:
            snapshot = SignalSnapshot.from_signal(bot, signal, bars)
            try:
                decision = self._reviewer.review(snapshot)
            except AIReviewError as exc:
                self._append("ai_review", bot_id, {"available": False, "error": str(exc)})
                if not self._settings.ai_fail_open:
                    result.warnings.append("ai_unavailable_skip_cycle")
                    return "ai_unavailable"
                result.warnings.append("ai_unavailable_half_risk")
                scale = 0.5
            else:
                self._append("ai_review", bot_id, {"available": True, **decision.model_dump()})
                if decision.decision == "DENY":
                    return "ai_denied"
                scale = decision.quantity_scale()

        now = self._clock()
        account = AccountState(
            balance=broker.get_account_balance(),
            trades=self._repository.list_trades(bot.id),
            now=now,
        )
        verdict = self._gatekeeper.validate(bot, signal, account)
        self._append(
            "risk_check",
            bot_id,
            {
                "approved": verdict.approved,
                "quantity": verdict.quantity,
                "reason": verdict.reason,
                "breach": verdict.breach,
                "balance": account.balance,
                "scale": scale,
            },
        )
        if not verdict.approved:
            result.warnings.append(verdict.reason or "risk_rejected")
            return "risk_breach" if verdict.breach else "rejected"

        quantity = verdict.quantity * scale
        if quantity <= 0:
            result.warnings.append("qty_zero_after_review")
            return "rejected"

        lock.ensure_held()
        trade = executor.open(bot, signal, quantity=quantity, lock_token=lock.token)
        result.trade = trade
        self._append("order", bot_id, asdict(trade))
        return "opened"

    def _may_add_position(self, bot: Bot) -> bool:
        if not bot.risk.allow_pyramiding:
            return False
        open_count = sum(1 for t in self._repository.list_trades(bot.id) if t.is_open)
        return open_count < bot.risk.max_concurrent_positions

    def _session_for(self, bot: Bot) -> BrokerSession:
        with self._sessions_lock:
            session = self._sessions.get(bot.id)
            if session is None:
                session = self._broker_factory(bot)
                self._sessions[bot.id] = session
        if not session.is_connected():
            session.connect(self._credentials)
        return session

    def _record_outcome(self, bot_id: str, result: CycleResult) -> None:
        if result.status in _UNTOUCHED_STATUSES:
            return
        fields: dict[str, Any] = {"last_error": result.error}
        if result.error is None:
            # Failed cycles leave the last successful check in place.
            fields["last_evaluated_at"] = self._clock().isoformat()
        try:
            self._repository.update_bot(bot_id, fields)
        except Exception as exc:  # noqa: BLE001 - bookkeeping must not mask the cycle outcome.
            self._logger.error("pipeline_outcome_write_failed", bot_id=bot_id, error=str(exc))

    def _append(self, event_type: str, bot_id: str, payload: dict[str, Any]) -> None:
        try:
            self._journal.append(event_type, bot_id, payload)
        except OSError as exc:
            self._logger.error("journal_write_failed", bot_id=bot_id, event_type=event_type, error=str(exc))

    def _finish(self, result: CycleResult, started: float, *, status: str) -> CycleResult:
        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        if status not in ("locked", "lock_unavailable"):
            self._append(
                "cycle_end",
                result.bot_id,
                {"status": status, "elapsed_ms": result.elapsed_ms, "error": result.error},
            )
        self._logger.info(
            "pipeline_cycle_done",
            bot_id=result.bot_id,
            status=status,
            elapsed_ms=round(result.elapsed_ms, 2),
        )
        return result


def _error_status(exc: Exception) -> str:
    if isinstance(exc, BrokerUnavailable):
        return "broker_unavailable"
    if isinstance(exc, InvalidStrategyConfig):
        return "invalid_strategy"
    if isinstance(exc, PersistenceFailure):
        return "persistence_failure"
    return "rejected"
