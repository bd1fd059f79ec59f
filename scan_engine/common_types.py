"""Shared records passed between the scan engine and its collaborators.

The market-data client normalises exchange payloads into ``Candle`` /
``Ticker``; the inference client returns an ``AnalysisResult``.  All of
them are frozen: once a collaborator hands one over it is never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field

BUY = "BUY"
SELL = "SELL"
NEUTRAL = "NEUTRAL"
SIGNALS: frozenset[str] = frozenset({BUY, SELL, NEUTRAL})


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar; ``open_time`` is epoch milliseconds."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Ticker:
    """24h ticker snapshot."""

    last_price: float
    change_pct_24h: float


@dataclass(frozen=True)
class TradePlan:
    entry: float
    stop_loss: float
    take_profit: float


@dataclass(frozen=True)
class AnalysisResult:
    """Structured trading signal produced by the inference collaborator."""

    signal: str  # BUY / SELL / NEUTRAL
    confidence: float  # 0 … 100
    support: float
    resistance: float
    rsi: float
    trend: str
    reasoning: tuple[str, ...] = ()
    trade_plan: TradePlan | None = None
    model: str = ""

    @property
    def is_directional(self) -> bool:
        return self.signal in (BUY, SELL)


@dataclass(frozen=True)
class SignalLogEntry:
    """Display-only record of a directional signal."""

    time: float  # epoch seconds
    symbol: str
    signal: str
    price: float
    confidence: float
    reasoning: tuple[str, ...] = field(default=(), compare=False)
