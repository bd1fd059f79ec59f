"""Crypto Signal Dashboard: interval-aligned AI signals for a watchlist.

Features:
- Watchlist of base assets (Binance spot, USDT pairs)
- Background sweep at every candle close (1/5/15/30/60 min)
- Gemini signal inference (BUY / SELL / NEUTRAL + levels + trade plan)
- Candlestick chart with support/resistance (Plotly)
- Telegram relay with per-candle de-duplication + connection test
- Signal log of recent directional calls

Run with::

    streamlit run streamlit_dashboard.py

Requires ``GEMINI_API_KEY`` in ``.env`` or environment.
Optional: ``DASHBOARD_TELEGRAM_BOT_TOKEN`` / ``DASHBOARD_TELEGRAM_CHAT_ID``.
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
import time
from pathlib import Path

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

# ── Path setup ──────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def _load_env_file(env_path: Path) -> None:
    """Load KEY=VALUE pairs from .env into process env."""
    if not env_path.exists():
        return
    try:
        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].strip()
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if key:
                os.environ.setdefault(key, value)
    except OSError:
        logging.getLogger(__name__).warning("Could not read %s", env_path)


_load_env_file(PROJECT_ROOT / ".env")

from dashboard_binance import BinanceMarketData
from dashboard_gemini import GeminiAnalyzer
from dashboard_notifications import TelegramNotifier, send_test_message
from dashboard_ui_helpers import (
    ai_status_label,
    candle_frame_rows,
    coin_label,
    format_change,
    format_price,
    signal_icon,
    signal_label,
    signal_log_rows,
)
from scan_engine.clock import SUPPORTED_INTERVALS, format_countdown
from scan_engine.log_redaction import apply_global_log_redaction
from scan_engine.orchestrator import ScanOrchestrator
from scan_engine.scheduler import ScanScheduler
from scan_engine.settings import NotifyConfig, SettingsStore
from scan_engine.watchlist import normalize_symbol

logging.basicConfig(
    level=os.getenv("DASHBOARD_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
apply_global_log_redaction()
logger = logging.getLogger(__name__)

# ── Page config ─────────────────────────────────────────────────

st.set_page_config(
    page_title="Crypto Signal Dashboard",
    page_icon="📈",
    layout="wide",
    initial_sidebar_state="expanded",
)

# ── Scan engine (one per process, shared by every session) ──────


@st.cache_resource
def _scan_engine() -> tuple[ScanOrchestrator, ScanScheduler]:
    """Build the orchestrator + scheduler pair once per server process."""
    store = SettingsStore()
    market = BinanceMarketData()
    inference = GeminiAnalyzer()
    engine = ScanOrchestrator(
        market,
        inference,
        settings=store.load(),
        store=store,
        notifier_factory=TelegramNotifier,
    )
    scheduler = ScanScheduler(engine)
    # atexit runs LIFO: scheduler stops first, HTTP clients close last.
    atexit.register(inference.close)
    atexit.register(market.close)
    atexit.register(engine.close)
    atexit.register(scheduler.stop)
    scheduler.submit(engine.refresh_foreground)
    scheduler.start()
    logger.info("Scan engine started")
    return engine, scheduler


orch, sched = _scan_engine()
if not sched.is_alive:
    sched.start()
st.session_state.orchestrator = orch
st.session_state.scheduler = sched

if "auto_refresh" not in st.session_state:
    st.session_state.auto_refresh = True

view = orch.view

# ── Sidebar: watchlist + settings ───────────────────────────────

with st.sidebar:
    st.subheader("👀 Watchlist")
    new_sym = st.text_input("Add symbol", value="", key="add_sym", placeholder="e.g. XRP")
    if st.button("➕ Add", width="stretch") and new_sym.strip():
        try:
            _sym = normalize_symbol(new_sym)
        except ValueError as exc:
            st.error(str(exc))
        else:
            sched.submit(orch.add_symbol, _sym)
            st.toast(f"Added {_sym}", icon="➕")
            st.rerun()

    for sym in view.watchlist:
        c1, c2 = st.columns([5, 1])
        with c1:
            st.caption(f"{'▶ ' if sym == view.symbol else ''}{sym} · {coin_label(sym)}")
        with c2:
            if st.button("✕", key=f"rm_{sym}"):
                sched.submit(orch.remove_symbol, sym)
                st.rerun()

    st.divider()
    st.subheader("⏱️ Scan interval")
    _intervals = list(SUPPORTED_INTERVALS)
    interval = st.selectbox(
        "Candle / scan interval (minutes)",
        _intervals,
        index=_intervals.index(view.scan_interval_minutes),
    )
    if interval != view.scan_interval_minutes:
        orch.set_scan_interval_minutes(interval)
        sched.submit(orch.refresh_foreground)
        st.rerun()

    st.divider()
    st.subheader("📨 Telegram")
    cfg = orch.notify_config
    with st.form("notify_form"):
        bot_token = st.text_input("Bot token", value=cfg.bot_token, type="password")
        chat_id = st.text_input("Chat ID", value=cfg.chat_id)
        enabled = st.toggle("Relay signals automatically", value=cfg.enabled)
        min_conf = st.slider("Minimum confidence", 0, 100, int(cfg.min_confidence), 5)
        saved = st.form_submit_button("Save")
    if saved:
        orch.set_notify_config(NotifyConfig(
            enabled=enabled,
            bot_token=bot_token.strip(),
            chat_id=chat_id.strip(),
            min_confidence=float(min_conf),
        ))
        st.toast("Telegram settings saved", icon="💾")
        st.rerun()
    if st.button("🔔 Send test message", width="stretch"):
        ok, status = send_test_message(orch.notify_config)
        (st.success if ok else st.error)(status)
    if view.notify_error:
        st.warning(view.notify_error)

    st.divider()
    st.session_state.auto_refresh = st.toggle("Auto-refresh", value=st.session_state.auto_refresh)
    if sched.last_error:
        st.caption(f"Last scheduler error: {sched.last_error}")
    st.caption(f"Sweeps: {orch.sweep_count} | Ticks: {sched.tick_count}")

# ── Header: symbol buttons ──────────────────────────────────────

st.title("📈 Crypto Signal Dashboard")
cols = st.columns(max(len(view.watchlist), 1))
for col, sym in zip(cols, view.watchlist):
    with col:
        if st.button(sym, key=f"sel_{sym}", type="primary" if sym == view.symbol else "secondary",
                     width="stretch"):
            if sym != view.symbol:
                sched.submit(orch.set_foreground_symbol, sym)
            st.rerun()

# ── Metrics ─────────────────────────────────────────────────────

m1, m2, m3, m4 = st.columns(4)
m1.metric(f"{view.symbol} price", format_price(view.price))
m2.metric("24h change", format_change(view.change_pct_24h) if view.price else "—")
m3.metric(
    f"Next {view.scan_interval_minutes}m close",
    format_countdown(orch.seconds_until_next_scan()),
)
m4.metric("AI status", ai_status_label(view))

if view.error:
    st.error(view.error)

# ── Chart + signal card ─────────────────────────────────────────

left, right = st.columns([2, 1])

with left:
    if view.candles:
        df = pd.DataFrame(candle_frame_rows(view.candles[-120:]))
        fig = go.Figure(data=[go.Candlestick(
            x=df["time"], open=df["open"], high=df["high"], low=df["low"], close=df["close"],
            name=view.symbol,
        )])
        analysis = view.last_analysis
        if analysis is not None:
            fig.add_hline(y=analysis.support, line_dash="dot", line_color="#10b981",
                          annotation_text="Support")
            fig.add_hline(y=analysis.resistance, line_dash="dot", line_color="#f43f5e",
                          annotation_text="Resistance")
        fig.update_layout(height=480, xaxis_rangeslider_visible=False,
                          margin=dict(l=10, r=10, t=10, b=10), template="plotly_dark")
        st.plotly_chart(fig, width="stretch")
    elif view.loading:
        st.info("Loading market data…")

    if st.button("🔍 Analyse now", disabled=view.analyzing):
        sched.submit(orch.refresh_foreground)
        st.rerun()

with right:
    st.subheader("Trading call")
    analysis = view.last_analysis
    if analysis is None:
        st.caption("Waiting for the next candle close or a manual analysis…")
    else:
        st.markdown(
            f"### {signal_icon(analysis.signal)} {signal_label(analysis.signal)} "
            f"· {analysis.confidence:.0f}%"
        )
        st.caption(f"Trend: {analysis.trend or 'N/A'} | RSI: {analysis.rsi:.1f} | {analysis.model}")
        for reason in analysis.reasoning:
            st.markdown(f"- {reason}")
        s1, s2 = st.columns(2)
        s1.metric("Support", format_price(analysis.support))
        s2.metric("Resistance", format_price(analysis.resistance))
        if analysis.trade_plan is not None:
            p1, p2, p3 = st.columns(3)
            p1.metric("Entry", format_price(analysis.trade_plan.entry))
            p2.metric("Stop loss", format_price(analysis.trade_plan.stop_loss))
            p3.metric("Take profit", format_price(analysis.trade_plan.take_profit))
    if orch.notify_config.enabled:
        st.success("Telegram relay active")

# ── Signal log ──────────────────────────────────────────────────

st.subheader("⚡ Signal log")
if view.signal_log:
    st.dataframe(pd.DataFrame(signal_log_rows(view.signal_log)), width="stretch")
else:
    st.caption("No directional signals yet.")

st.caption("AI-generated analysis, not financial advice.")

# ── Auto-refresh trigger ───────────────────────────────────────

# Sleep briefly to keep the countdown ticking; the scheduler thread does
# the actual polling.
if st.session_state.auto_refresh:
    time.sleep(1)
    st.rerun()
