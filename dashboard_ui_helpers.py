"""Pure helper functions for streamlit_dashboard.py.

Every function here is free of Streamlit / session-state side-effects
and can be tested in regular pytest without launching a Streamlit app.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from scan_engine.common_types import BUY, SELL, Candle, SignalLogEntry
from scan_engine.view_state import ViewState

# ── Icon / label maps ───────────────────────────────────────────

SIGNAL_ICONS: dict[str, str] = {
    BUY: "🟢",
    SELL: "🔴",
    "NEUTRAL": "🟡",
}

SIGNAL_LABELS: dict[str, str] = {
    BUY: "BUY",
    SELL: "SELL",
    "NEUTRAL": "WAIT",
}

COIN_LABELS: dict[str, str] = {
    "BTC": "Bitcoin",
    "ETH": "Ethereum",
    "SOL": "Solana",
    "NEAR": "Near",
    "BNB": "BNB",
    "DOGE": "Dogecoin",
}


def coin_label(symbol: str) -> str:
    return COIN_LABELS.get(symbol, symbol)


def signal_icon(signal: str | None) -> str:
    return SIGNAL_ICONS.get(signal or "", "⚪")


def signal_label(signal: str | None) -> str:
    return SIGNAL_LABELS.get(signal or "", "—")


# ── Number formatting ───────────────────────────────────────────


def format_price(value: float | None) -> str:
    """``$64,250.10`` for large prices, more decimals for sub-dollar coins."""
    if value is None or value <= 0:
        return "—"
    if value >= 1:
        return f"${value:,.2f}"
    return f"${value:.6f}".rstrip("0").rstrip(".")


def format_change(pct: float | None) -> str:
    if pct is None:
        return "—"
    arrow = "▲" if pct >= 0 else "▼"
    return f"{arrow} {abs(pct):.2f}%"


def ai_status_label(view: ViewState) -> str:
    """Header status text for the AI card."""
    if view.analyzing:
        return "Analyzing…"
    if view.is_scanning:
        return "Sweeping watchlist…"
    return "Ready"


# ── Tables ──────────────────────────────────────────────────────


def signal_log_rows(entries: tuple[SignalLogEntry, ...] | list[SignalLogEntry]) -> list[dict[str, Any]]:
    """Rows for the signal-log table (newest first, as stored)."""
    return [
        {
            "Time": datetime.fromtimestamp(e.time).strftime("%H:%M:%S"),
            "Symbol": e.symbol,
            "Signal": f"{signal_icon(e.signal)} {e.signal}",
            "Price": format_price(e.price),
            "Confidence": f"{e.confidence:.0f}%",
        }
        for e in entries
    ]


def candle_frame_rows(candles: tuple[Candle, ...] | list[Candle]) -> list[dict[str, Any]]:
    """Candles as dict rows (``time`` as datetime) for a pandas DataFrame."""
    return [
        {
            "time": datetime.fromtimestamp(c.open_time / 1000),
            "open": c.open,
            "high": c.high,
            "low": c.low,
            "close": c.close,
            "volume": c.volume,
        }
        for c in candles
    ]
