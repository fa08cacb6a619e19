"""Built-in strategy rule sets and their validated definitions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import pandas as pd  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autotrade.errors import InvalidStrategyConfig
from autotrade.strategy.indicators import rsi, sma
from autotrade.types import Direction

StrategyKind = Literal["ma_crossover", "rsi_mean_reversion"]


@dataclass(slots=True)
class RuleHit:
    """Raw directional output of a rule set before prices are attached."""

    direction: Direction
    confidence: float
    reasons: list[str] = field(default_factory=list)


class StrategyRules(Protocol):
    """Pure rule set evaluated on an ascending OHLCV frame."""

    @property
    def min_bars(self) -> int:
        """Fewest bars the rules need to produce a signal."""

    def evaluate(self, frame: pd.DataFrame) -> RuleHit | None:
        """Return a hit for the last bar or ``None``."""


class MovingAverageCrossover:
    """Signal on the bar where fast/slow SMA ordering flips.

    A zero gap on either the previous or the current bar is not a flip.
    """

    def __init__(self, fast: int, slow: int) -> None:
        if fast < 1 or slow <= fast:
            raise InvalidStrategyConfig(f"invalid_crossover_periods: fast={fast} slow={slow}")
        self.fast = fast
        self.slow = slow

    @property
    def min_bars(self) -> int:
        return self.slow + 1

    def evaluate(self, frame: pd.DataFrame) -> RuleHit | None:
        if len(frame) < self.min_bars:
            return None
        close = frame["close"].astype(float)
        fast = sma(close, self.fast)
        slow = sma(close, self.slow)
        prev_sign = _sign(float(fast.iloc[-2]) - float(slow.iloc[-2]), float(slow.iloc[-2]))
        curr_gap = float(fast.iloc[-1]) - float(slow.iloc[-1])
        curr_sign = _sign(curr_gap, float(slow.iloc[-1]))
        if prev_sign == 0 or curr_sign == 0 or prev_sign == curr_sign:
            return None

        slow_last = abs(float(slow.iloc[-1])) or 1.0
        confidence = min(1.0, 0.5 + abs(curr_gap) / slow_last * 10)
        if curr_sign > 0:
            return RuleHit("LONG", round(confidence, 6), [f"sma{self.fast}_crossed_above_sma{self.slow}"])
        return RuleHit("SHORT", round(confidence, 6), [f"sma{self.fast}_crossed_below_sma{self.slow}"])


class OscillatorMeanReversion:
    """Fade RSI extremes: long below ``oversold``, short above ``overbought``."""

    def __init__(self, period: int, oversold: float, overbought: float) -> None:
        if period < 2:
            raise InvalidStrategyConfig(f"invalid_rsi_period: {period}")
        if not 0 < oversold < overbought < 100:
            raise InvalidStrategyConfig(
                f"invalid_rsi_thresholds: oversold={oversold} overbought={overbought}"
            )
        self.period = period
        self.oversold = oversold
        self.overbought = overbought

    @property
    def min_bars(self) -> int:
        return self.period + 1

    def evaluate(self, frame: pd.DataFrame) -> RuleHit | None:
        if len(frame) < self.min_bars:
            return None
        value = rsi(frame["close"], self.period).iloc[-1]
        if pd.isna(value):
            return None
        current = float(value)
        if current < self.oversold:
            confidence = min(1.0, 0.5 + (self.oversold - current) / self.oversold)
            return RuleHit("LONG", round(confidence, 6), [f"rsi_{current:.2f}_below_{self.oversold:g}"])
        if current > self.overbought:
            confidence = min(1.0, 0.5 + (current - self.overbought) / (100 - self.overbought))
            return RuleHit("SHORT", round(confidence, 6), [f"rsi_{current:.2f}_above_{self.overbought:g}"])
        return None


class StrategyDefinition(BaseModel):
    """Immutable, versioned rule set referenced by bots."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    kind: StrategyKind
    version: int = Field(default=1, ge=1)
    params: dict[str, float] = Field(default_factory=dict)
    stop_loss_pct: float = Field(default=1.0, gt=0.0, lt=100.0)
    take_profit_pct: float = Field(default=2.0, gt=0.0)

    @classmethod
    def parse(cls, payload: dict[str, Any]) -> StrategyDefinition:
        """Validate a raw payload, mapping schema errors to InvalidStrategyConfig."""
        try:
            definition = cls.model_validate(payload)
        except ValidationError as exc:
            raise InvalidStrategyConfig(
                f"strategy_schema_error: {exc.errors()[0]['msg']}"
            ) from exc
        definition.build_rules()
        return definition

    def build_rules(self) -> StrategyRules:
        params = self.params
        if self.kind == "ma_crossover":
            return MovingAverageCrossover(
                fast=_int_param(params, "fast", 9),
                slow=_int_param(params, "slow", 21),
            )
        return OscillatorMeanReversion(
            period=_int_param(params, "period", 14),
            oversold=float(params.get("oversold", 30.0)),
            overbought=float(params.get("overbought", 70.0)),
        )


def _int_param(params: dict[str, float], name: str, default: int) -> int:
    value = params.get(name, default)
    if float(value) != int(value):
        raise InvalidStrategyConfig(f"param_must_be_integer: {name}={value}")
    return int(value)


def _sign(gap: float, scale: float) -> int:
    if math.isnan(gap):
        return 0
    if abs(gap) <= 1e-9 * max(1.0, abs(scale)):
        return 0
    return 1 if gap > 0 else -1
