"""Notification text for directional signals (Telegram Markdown)."""
from __future__ import annotations

from scan_engine.common_types import BUY, AnalysisResult


def _fmt_price(value: float) -> str:
    if abs(value) >= 1:
        return f"${value:,.2f}"
    return f"${value:,.6f}".rstrip("0").rstrip(".")


def _interval_text(interval_minutes: int) -> str:
    return "1H" if interval_minutes == 60 else f"{interval_minutes}M"


def format_signal_message(
    symbol: str,
    analysis: AnalysisResult,
    price: float,
    interval_minutes: int,
    quote: str = "USDT",
) -> str:
    """Format a directional signal into a Telegram Markdown message."""
    direction = "🟢 BUY" if analysis.signal == BUY else "🔴 SELL"
    lines = [
        f"🚀 *{_interval_text(interval_minutes)} SIGNAL ALERT*",
        "",
        f"Pair: *{symbol}/{quote}*",
        f"Signal: *{direction}*",
        f"Price: *{_fmt_price(price)}*",
        f"Confidence: *{analysis.confidence:.0f}%*",
        f"Trend: *{analysis.trend or 'N/A'}* | RSI: *{analysis.rsi:.1f}*",
    ]
    if analysis.reasoning:
        lines.append("")
        lines.append("💡 *Analysis:*")
        lines.extend(f"• {reason}" for reason in analysis.reasoning)
    lines.append("")
    lines.append(f"📉 Support: {_fmt_price(analysis.support)}")
    lines.append(f"📈 Resistance: {_fmt_price(analysis.resistance)}")
    plan = analysis.trade_plan
    if plan is not None:
        lines.append("")
        lines.append(
            f"🎯 Entry {_fmt_price(plan.entry)} | SL {_fmt_price(plan.stop_loss)} "
            f"| TP {_fmt_price(plan.take_profit)}"
        )
    lines.append("")
    lines.append("⚠️ _Always manage risk with a stop loss._")
    return "\n".join(lines)
