"""Gemini trading-signal inference for the signal dashboard.

Sends the most recent candles for a symbol to the Gemini
``generateContent`` REST endpoint with a JSON response schema and parses
the answer into an :class:`~scan_engine.common_types.AnalysisResult`.

Requests go through **httpx** straight to the REST API (no ``google-genai``
SDK).

Rate limits (HTTP 429 / ``RESOURCE_EXHAUSTED``) are retried with
exponential backoff per model; when a model stays exhausted (or does not
exist) the next variant in ``models`` is tried.  Only when every variant
has failed does :meth:`GeminiAnalyzer.analyze` raise.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import httpx

from scan_engine.common_types import SIGNALS, AnalysisResult, Candle, TradePlan
from scan_engine.error_taxonomy import (
    ConfigError,
    InferenceError,
    MalformedResponseError,
    RateLimitError,
    retry,
)

logger = logging.getLogger(__name__)

GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODELS: tuple[str, ...] = (
    "gemini-3-flash-preview",
    "gemini-2.5-flash",
    "gemini-2.0-flash",
)
_API_TIMEOUT = 30.0  # seconds
_CANDLE_WINDOW = 60

_APIKEY_RE = re.compile(r"(apikey|api_key|token|key)=[^&\s]+", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def _gemini_key() -> str:
    return os.environ.get("GEMINI_API_KEY", "") or os.environ.get("API_KEY", "")


# ---------------------------------------------------------------------------
# Prompt + schema
# ---------------------------------------------------------------------------

_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "signal": {"type": "STRING", "enum": ["BUY", "SELL", "NEUTRAL"]},
        "confidence": {"type": "NUMBER"},
        "reasoning": {"type": "ARRAY", "items": {"type": "STRING"}},
        "keyLevels": {
            "type": "OBJECT",
            "properties": {
                "support": {"type": "NUMBER"},
                "resistance": {"type": "NUMBER"},
            },
            "required": ["support", "resistance"],
        },
        "tradePlan": {
            "type": "OBJECT",
            "properties": {
                "entry": {"type": "NUMBER"},
                "stopLoss": {"type": "NUMBER"},
                "takeProfit": {"type": "NUMBER"},
            },
        },
        "indicators": {
            "type": "OBJECT",
            "properties": {
                "rsi": {"type": "NUMBER"},
                "trend": {"type": "STRING"},
            },
            "required": ["rsi", "trend"],
        },
    },
    "required": ["signal", "confidence", "reasoning", "keyLevels", "indicators"],
}


def compact_candles(candles: Sequence[Candle], window: int = _CANDLE_WINDOW) -> list[dict[str, Any]]:
    """Last *window* candles as short-keyed dicts to keep the prompt small."""
    rows: list[dict[str, Any]] = []
    for c in list(candles)[-window:]:
        rows.append({
            "t": datetime.fromtimestamp(c.open_time / 1000).strftime("%H:%M"),
            "o": c.open,
            "h": c.high,
            "l": c.low,
            "c": c.close,
            "v": round(c.volume),
        })
    return rows


def candle_interval(candles: Sequence[Candle], default: str = "15m") -> str:
    """Timeframe label derived from the spacing of the last two candles."""
    if len(candles) < 2:
        return default
    minutes = (candles[-1].open_time - candles[-2].open_time) // 60_000
    if minutes <= 0:
        return default
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}m"


def build_prompt(
    symbol: str,
    candles: Sequence[Candle],
    interval: str,
    quote: str = "USDT",
    window: int = _CANDLE_WINDOW,
) -> str:
    rows = compact_candles(candles, window)
    return (
        f"You are an expert crypto scalper working the {interval} timeframe.\n"
        f"Analyse {symbol}/{quote} using the latest {len(rows)} {interval} candles: "
        f"{json.dumps(rows, separators=(',', ':'))}\n\n"
        "STRATEGY:\n"
        "- Focus on price action, RSI and support/resistance zones.\n"
        "- Plan trades meant to be held for roughly one to three candles.\n"
        "- Only give high confidence when the indicators clearly agree.\n\n"
        "Return JSON with:\n"
        "1. signal: BUY, SELL or NEUTRAL.\n"
        "2. confidence: 0-100.\n"
        "3. reasoning: three short technical reasons.\n"
        "4. keyLevels: {support, resistance}.\n"
        "5. tradePlan: {entry, stopLoss, takeProfit}.\n"
        "6. indicators: {rsi, trend: \"Up\" | \"Down\" | \"Sideways\"}."
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _num(data: dict[str, Any], key: str, where: str) -> float:
    try:
        value = data[key]
    except (KeyError, TypeError):
        raise MalformedResponseError(f"missing {where}.{key}") from None
    if isinstance(value, bool):
        raise MalformedResponseError(f"{where}.{key} is not a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedResponseError(f"{where}.{key} is not a number: {value!r}") from None


def parse_analysis(text: str, *, model: str = "") -> AnalysisResult:
    """Parse the model's JSON answer (optionally fenced) into an ``AnalysisResult``."""
    if not text or not text.strip():
        raise MalformedResponseError("model returned empty content", model=model)
    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"response is not JSON: {exc}", model=model) from exc
    if not isinstance(data, dict):
        raise MalformedResponseError("response JSON is not an object", model=model)

    signal = str(data.get("signal", "")).strip().upper()
    if signal not in SIGNALS:
        raise MalformedResponseError(f"unknown signal {data.get('signal')!r}", model=model)
    confidence = min(max(_num(data, "confidence", "root"), 0.0), 100.0)

    levels = data.get("keyLevels")
    indicators = data.get("indicators")
    if not isinstance(levels, dict) or not isinstance(indicators, dict):
        raise MalformedResponseError("missing keyLevels / indicators", model=model)

    reasoning = data.get("reasoning") or []
    if not isinstance(reasoning, list):
        reasoning = [reasoning]

    plan_raw = data.get("tradePlan")
    trade_plan = None
    if isinstance(plan_raw, dict) and {"entry", "stopLoss", "takeProfit"} <= plan_raw.keys():
        trade_plan = TradePlan(
            entry=_num(plan_raw, "entry", "tradePlan"),
            stop_loss=_num(plan_raw, "stopLoss", "tradePlan"),
            take_profit=_num(plan_raw, "takeProfit", "tradePlan"),
        )

    return AnalysisResult(
        signal=signal,
        confidence=confidence,
        support=_num(levels, "support", "keyLevels"),
        resistance=_num(levels, "resistance", "keyLevels"),
        rsi=_num(indicators, "rsi", "indicators"),
        trend=str(indicators.get("trend", "")),
        reasoning=tuple(str(r) for r in reasoning if str(r).strip()),
        trade_plan=trade_plan,
        model=model,
    )


def _response_text(payload: Any) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GeminiAnalyzer:
    """Inference collaborator: ``analyze(symbol, candles, model_hint)``.

    Parameters
    ----------
    api_key : str, optional
        Gemini API key (default: ``GEMINI_API_KEY`` / ``API_KEY`` env).
    models : sequence of str
        Model variants in fallback order.
    client : httpx.Client, optional
        Injected client (tests pass a ``MagicMock``).
    max_attempts : int
        Tries per model on rate limits (including the first).
    backoff_s : float
        First rate-limit backoff; doubles on each further retry.
    candle_window : int
        Number of most recent candles sent in the prompt.
    sleep : callable
        Sleep function used between retries.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        models: Sequence[str] = DEFAULT_MODELS,
        client: httpx.Client | None = None,
        max_attempts: int = 3,
        backoff_s: float = 6.0,
        candle_window: int = _CANDLE_WINDOW,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = _gemini_key() if api_key is None else api_key
        self.models = tuple(models)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=_API_TIMEOUT)
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self.candle_window = candle_window
        self._sleep = sleep

    def model_order(self, model_hint: str | None = None) -> list[str]:
        order = [model_hint] if model_hint else []
        order.extend(self.models)
        return list(dict.fromkeys(order))

    def analyze(
        self,
        symbol: str,
        candles: Sequence[Candle],
        model_hint: str | None = None,
    ) -> AnalysisResult:
        if not self.api_key:
            raise ConfigError("GEMINI_API_KEY is not configured")
        if not candles:
            raise InferenceError(f"no candles to analyze for {symbol}", symbol=symbol)

        prompt = build_prompt(symbol, candles, candle_interval(candles), window=self.candle_window)
        last_exc: InferenceError | None = None
        for model in self.model_order(model_hint):
            call = retry(
                attempts=self.max_attempts,
                backoff=2.0,
                initial_delay=self.backoff_s,
                max_delay=60.0,
                retryable_exceptions=(RateLimitError,),
                on_retry=lambda attempt, exc, _m=model: logger.warning(
                    "Gemini %s rate-limited for %s (attempt %d/%d)",
                    _m, symbol, attempt, self.max_attempts,
                ),
                sleep=self._sleep,
            )(self._generate)
            try:
                text = call(model, prompt, symbol)
                result = parse_analysis(text, model=model)
            except RateLimitError as exc:
                logger.warning("Gemini %s exhausted for %s, trying next model", model, symbol)
                last_exc = exc
                continue
            except MalformedResponseError as exc:
                exc.symbol = symbol
                raise
            except InferenceError as exc:
                if exc.model == model and "HTTP 404" in str(exc):
                    logger.warning("Gemini model %s unavailable, trying next model", model)
                    last_exc = exc
                    continue
                raise
            logger.debug("Gemini %s answered for %s: %s", model, symbol, result.signal)
            return result

        raise InferenceError(
            f"All Gemini models exhausted for {symbol}: {last_exc}",
            symbol=symbol,
            model=last_exc.model if last_exc else "",
        )

    def _generate(self, model: str, prompt: str, symbol: str) -> str:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": _RESPONSE_SCHEMA,
                "temperature": 0.2,
            },
        }
        try:
            resp = self._client.post(
                f"{GEMINI_BASE}/models/{model}:generateContent",
                headers={
                    "x-goog-api-key": self.api_key,
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as exc:
            _safe = _APIKEY_RE.sub(r"\1=***", str(exc))
            raise InferenceError(f"Gemini request failed: {_safe}", symbol=symbol, model=model) from exc

        body = resp.text or ""
        if resp.status_code == 429 or (resp.status_code >= 400 and "RESOURCE_EXHAUSTED" in body):
            raise RateLimitError(f"Gemini {model} HTTP 429", symbol=symbol, model=model)
        if resp.status_code in (401, 403):
            raise ConfigError(f"Gemini rejected the API key (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise InferenceError(
                f"Gemini {model} HTTP {resp.status_code}: {body[:200]}", symbol=symbol, model=model,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Gemini body is not JSON", symbol=symbol, model=model) from exc
        return _response_text(data)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
