"""Signal review input/output schemas and strict parsing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autotrade.types import Bar, Bot, Signal


class SignalSnapshot(BaseModel):
    """What the reviewer sees about one candidate trade."""

    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(min_length=1)
    timeframe: str
    strategy_id: str
    direction: Literal["LONG", "SHORT"]
    confidence: float = Field(ge=0.0, le=1.0)
    entry_price: float = Field(gt=0)
    stop_loss: float = Field(gt=0)
    take_profit: float = Field(gt=0)
    reasons: list[str] = Field(default_factory=list)
    recent_closes: list[float] = Field(default_factory=list)

    @classmethod
    def from_signal(cls, bot: Bot, signal: Signal, bars: list[Bar], *, tail: int = 20) -> SignalSnapshot:
        return cls(
            symbol=bot.symbol.upper(),
            timeframe=bot.timeframe.value,
            strategy_id=signal.strategy_id,
            direction=signal.direction,
            confidence=max(0.0, min(1.0, signal.confidence)),
            entry_price=signal.entry_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            reasons=list(signal.reasons),
            recent_closes=[float(bar.close) for bar in bars[-tail:]],
        )


class ReviewDecision(BaseModel):
    """Strict reviewer verdict."""

    model_config = ConfigDict(extra="forbid")

    decision: Literal["ALLOW", "DENY", "REDUCE"]
    confidence: float = Field(ge=0.0, le=1.0)
    risk_flags: list[str] = Field(default_factory=list)
    key_reasons: list[str] = Field(default_factory=list)

    @classmethod
    def deny_default(cls, reason: str) -> ReviewDecision:
        return cls(
            decision="DENY",
            confidence=0.0,
            risk_flags=["INVALID_RESPONSE"],
            key_reasons=[reason],
        )

    @classmethod
    def parse_strict(cls, payload: dict[str, Any]) -> ReviewDecision:
        """Any schema violation becomes DENY."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            return cls.deny_default(f"schema_validation_error: {exc.errors()[0]['msg']}")

    @classmethod
    def parse_response_text(cls, text: str) -> ReviewDecision:
        """Parse model text. Missing or malformed JSON is DENY."""
        try:
            json_obj = _extract_json_obj(text)
        except ValueError as exc:
            return cls.deny_default(str(exc))
        return cls.parse_strict(json_obj)

    def quantity_scale(self) -> float:
        """Multiplier applied to the risk-approved quantity."""
        if self.decision == "DENY":
            return 0.0
        if self.decision == "REDUCE":
            return max(0.0, min(1.0, self.confidence))
        return 1.0


def _extract_json_obj(text: str) -> dict[str, Any]:
    """First JSON object in plain or fenced text."""
    stripped = text.strip()
    candidates: list[str] = []
    if stripped.startswith("{") and stripped.endswith("}"):
        candidates.append(stripped)
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1))
    braces = re.search(r"\{.*\}", stripped, re.DOTALL)
    if braces:
        candidates.append(braces.group(0))
    if not candidates:
        raise ValueError("model_response_not_json")

    # json.JSONDecodeError is a ValueError, so bad JSON surfaces as DENY too.
    decoded = json.loads(candidates[0])
    if not isinstance(decoded, dict):
        raise ValueError("model_response_json_not_object")
    return decoded
