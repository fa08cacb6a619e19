"""Optional LLM confirmation of strategy signals."""

from __future__ import annotations

import time
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from autotrade.ai.schemas import ReviewDecision, SignalSnapshot
from autotrade.config import Settings
from autotrade.errors import AIReviewError
from autotrade.utils.logging import get_logger, log_llm_call

_OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class SignalReviewer(Protocol):
    def review(self, snapshot: SignalSnapshot) -> ReviewDecision: ...


class RuleReviewer:
    """Deterministic reviewer used when no LLM is configured."""

    def review(self, snapshot: SignalSnapshot) -> ReviewDecision:
        return ReviewDecision(
            decision="ALLOW",
            confidence=1.0,
            key_reasons=[f"rules_only: {snapshot.strategy_id}"],
        )


class OpenRouterReviewer:
    """Ask an OpenRouter chat model to ALLOW, REDUCE or DENY a signal."""

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._logger = get_logger("autotrade.ai.openrouter_client")

    def review(self, snapshot: SignalSnapshot) -> ReviewDecision:
        started = time.perf_counter()
        try:
            content = self._request_completion(snapshot)
        except AIReviewError:
            log_llm_call(
                self._logger,
                model=self._settings.openrouter_model,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                reason="api_error",
                symbol=snapshot.symbol,
            )
            raise

        decision = ReviewDecision.parse_response_text(content)
        success = "INVALID_RESPONSE" not in decision.risk_flags
        log_llm_call(
            self._logger,
            model=self._settings.openrouter_model,
            success=success,
            latency_ms=(time.perf_counter() - started) * 1000,
            decision=decision.decision,
            symbol=snapshot.symbol,
        )
        return decision

    @retry(
        retry=retry_if_exception_type(AIReviewError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _request_completion(self, snapshot: SignalSnapshot) -> str:
        if not self._settings.openrouter_api_key:
            raise AIReviewError("missing_openrouter_api_key")

        headers = {
            "Authorization": f"Bearer {self._settings.openrouter_api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._settings.openrouter_model,
            "temperature": 0,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You review automated trade signals. Return only JSON with keys: "
                        "decision (ALLOW|DENY|REDUCE), confidence, risk_flags, key_reasons."
                    ),
                },
                {
                    "role": "user",
                    "content": f"Signal: {snapshot.model_dump_json()}",
                },
            ],
        }

        try:
            with httpx.Client(
                timeout=self._settings.openrouter_timeout,
                transport=self._transport,
            ) as client:
                response = client.post(_OPENROUTER_URL, headers=headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AIReviewError(str(exc)) from exc

        return _extract_message_content(response.json())


def build_reviewer(settings: Settings) -> SignalReviewer:
    if settings.openrouter_api_key:
        return OpenRouterReviewer(settings)
    return RuleReviewer()


def _extract_message_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return "{}"
    first = choices[0]
    if not isinstance(first, dict):
        return "{}"
    message = first.get("message")
    if not isinstance(message, dict):
        return "{}"
    content = message.get("content")
    return content if isinstance(content, str) else "{}"
