"""Strategy registry and the pure evaluation entry point."""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from autotrade.data.market import bars_to_frame
from autotrade.errors import InvalidStrategyConfig
from autotrade.strategy.rules import StrategyDefinition, StrategyRules
from autotrade.types import Bar, Signal

BUILTIN_STRATEGIES: tuple[dict[str, Any], ...] = (
    {
        "id": "ma_crossover",
        "kind": "ma_crossover",
        "params": {"fast": 9, "slow": 21},
    },
    {
        "id": "rsi_mean_reversion",
        "kind": "rsi_mean_reversion",
        "params": {"period": 14, "oversold": 30, "overbought": 70},
    },
)


class StrategyBook:
    """Registry of immutable strategy definitions keyed by id."""

    def __init__(self, definitions: Sequence[StrategyDefinition] = ()) -> None:
        self._lock = threading.Lock()
        self._definitions: dict[str, StrategyDefinition] = {}
        self._rules: dict[str, StrategyRules] = {}
        for definition in definitions:
            self.register(definition)

    @classmethod
    def with_builtins(cls, extra_file: Path | None = None) -> StrategyBook:
        book = cls([StrategyDefinition.parse(payload) for payload in BUILTIN_STRATEGIES])
        if extra_file is not None:
            book.load_file(extra_file)
        return book

    def register(self, definition: StrategyDefinition) -> None:
        """Add a definition. Changing an existing id is refused; publish a new id instead."""
        rules = definition.build_rules()
        with self._lock:
            existing = self._definitions.get(definition.id)
            if existing is not None and existing != definition:
                raise InvalidStrategyConfig(f"strategy_is_immutable: {definition.id}")
            self._definitions[definition.id] = definition
            self._rules[definition.id] = rules

    def load_file(self, path: Path) -> None:
        """Register definitions from a JSON list."""
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise InvalidStrategyConfig(f"strategies_file_not_a_list: {path}")
        for payload in raw:
            self.register(StrategyDefinition.parse(payload))

    def get(self, strategy_id: str) -> tuple[StrategyDefinition, StrategyRules]:
        with self._lock:
            definition = self._definitions.get(strategy_id)
            if definition is None:
                raise InvalidStrategyConfig(f"unknown_strategy: {strategy_id}")
            return definition, self._rules[strategy_id]

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._definitions)


class StrategyEvaluator:
    """Apply a named strategy to bars. No side effects, same input same output."""

    def __init__(self, book: StrategyBook) -> None:
        self._book = book

    def evaluate(self, strategy_id: str, bars: Sequence[Bar]) -> Signal | None:
        definition, rules = self._book.get(strategy_id)
        if len(bars) < rules.min_bars:
            return None

        hit = rules.evaluate(bars_to_frame(bars))
        if hit is None:
            return None

        last = bars[-1]
        entry = float(last.close)
        sl_frac = definition.stop_loss_pct / 100.0
        tp_frac = definition.take_profit_pct / 100.0
        if hit.direction == "LONG":
            stop_loss = entry * (1.0 - sl_frac)
            take_profit = entry * (1.0 + tp_frac)
        else:
            stop_loss = entry * (1.0 + sl_frac)
            take_profit = entry * (1.0 - tp_frac)

        return Signal(
            direction=hit.direction,
            confidence=hit.confidence,
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=take_profit,
            strategy_id=definition.id,
            reasons=list(hit.reasons),
            created_at=last.open_time.isoformat(),
        )
