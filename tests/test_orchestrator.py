"""Tests for scan_engine/orchestrator.py: sweeps, forced refreshes, notify gating."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable

import pytest

from scan_engine.common_types import BUY, NEUTRAL, SELL, AnalysisResult, Candle, Ticker
from scan_engine.error_taxonomy import ConfigError, InferenceError, MarketDataError
from scan_engine.orchestrator import ScanOrchestrator, ScanPhase
from scan_engine.settings import DashboardSettings, NotifyConfig, SettingsStore
from scan_engine.view_state import ViewState

UTC = timezone.utc


def _ts(hour: int, minute: int, second: int = 0) -> float:
    return datetime(2026, 3, 14, hour, minute, second, tzinfo=UTC).timestamp()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _FakeMarket:
    """Serves one candle per symbol; ``latest`` controls its open_time."""

    def __init__(self) -> None:
        self.latest: dict[str, int] = {}
        self.prices: dict[str, float] = {"BTC": 65000.0, "ETH": 3200.0, "SOL": 150.0}
        self.fail: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.on_fetch: Callable[[str], None] | None = None

    def fetch_candles(self, symbol: str, interval_label: str) -> list[Candle]:
        self.calls.append((symbol, interval_label))
        if self.on_fetch is not None:
            hook, self.on_fetch = self.on_fetch, None
            hook(symbol)
        if symbol in self.fail:
            raise MarketDataError(f"Binance HTTP 400 for {symbol}", symbol=symbol)
        ts = self.latest.setdefault(symbol, 1_000)
        price = self.prices.get(symbol, 1.0)
        return [Candle(ts, price, price, price, price, 1.0)]

    def fetch_ticker(self, symbol: str) -> Ticker:
        return Ticker(last_price=self.prices.get(symbol, 1.0), change_pct_24h=1.5)

    def symbols_fetched(self) -> list[str]:
        return [s for s, _ in self.calls]


class _FakeInference:
    def __init__(self) -> None:
        self.signals: dict[str, tuple[str, float]] = {}
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self.on_analyze: Callable[[str], None] | None = None

    def analyze(self, symbol: str, candles: list[Candle], model_hint: str | None = None) -> AnalysisResult:
        self.calls.append(symbol)
        if self.on_analyze is not None:
            hook, self.on_analyze = self.on_analyze, None
            hook(symbol)
        if symbol in self.fail:
            raise InferenceError(f"All Gemini models exhausted for {symbol}", symbol=symbol)
        signal, confidence = self.signals.get(symbol, (NEUTRAL, 50.0))
        return AnalysisResult(
            signal=signal,
            confidence=confidence,
            support=candles[-1].close * 0.98,
            resistance=candles[-1].close * 1.02,
            rsi=55.0,
            trend="Up",
            reasoning=(f"{symbol} reason",),
            model="fake",
        )


class _FakeNotifier:
    instances: list["_FakeNotifier"] = []

    def __init__(self, config: NotifyConfig) -> None:
        self.config = config
        self.sent: list[str] = []
        self.ok = True
        self.raises = False
        _FakeNotifier.instances.append(self)

    def send(self, message: str) -> bool:
        if self.raises:
            raise RuntimeError("socket closed")
        self.sent.append(message)
        return self.ok


def _notify(enabled: bool = True, token: str = "123:abc", chat: str = "42", min_conf: float = 75.0) -> NotifyConfig:
    return NotifyConfig(enabled=enabled, bot_token=token, chat_id=chat, min_confidence=min_conf)


def _settings(watchlist=("BTC", "ETH"), interval: int = 15, notify: NotifyConfig | None = None,
              delay: float = 6.0) -> DashboardSettings:
    return DashboardSettings(
        watchlist=tuple(watchlist),
        scan_interval_minutes=interval,
        notify=notify or _notify(enabled=False),
        log_min_confidence=60.0,
        inter_symbol_delay_s=delay,
        model_hint="",
    )


@pytest.fixture
def clock():
    return _Clock(_ts(10, 7, 30))


@pytest.fixture
def market():
    return _FakeMarket()


@pytest.fixture
def inference():
    return _FakeInference()


@pytest.fixture
def make_orch(clock, market, inference):
    _FakeNotifier.instances.clear()

    def _make(
        sleep: Callable[[float], Any] | None = None,
        store: SettingsStore | None = None,
        **settings_kwargs: Any,
    ) -> ScanOrchestrator:
        return ScanOrchestrator(
            market,
            inference,
            settings=_settings(**settings_kwargs),
            store=store,
            notifier_factory=_FakeNotifier,
            clock=clock,
            sleep=sleep or (lambda _s: None),
            tz=UTC,
        )

    return _make


# ---------------------------------------------------------------------------
# Construction / read-only state
# ---------------------------------------------------------------------------


class TestInitialState:
    def test_first_symbol_is_foreground(self, make_orch):
        orch = make_orch(watchlist=("eth", "BTC"))
        assert orch.foreground_symbol == "ETH"
        assert orch.view.symbol == "ETH"
        assert orch.view.watchlist == ("ETH", "BTC")
        assert orch.view.loading is True
        assert orch.phase is ScanPhase.IDLE

    def test_empty_watchlist_seeded(self, make_orch):
        orch = make_orch(watchlist=())
        assert orch.watchlist == ["BTC"]

    def test_countdown(self, make_orch):
        orch = make_orch()
        assert orch.seconds_until_next_scan() == 450.0

    def test_boundaries_default_to_utc(self, market, inference, monkeypatch):
        monkeypatch.setenv("TZ", "Asia/Kolkata")
        time.tzset()
        try:
            orch = ScanOrchestrator(
                market, inference, settings=_settings(interval=60), clock=lambda: _ts(10, 7, 30),
            )
            assert orch.seconds_until_next_scan() == 52 * 60 + 30
        finally:
            monkeypatch.undo()
            time.tzset()

    def test_invalid_interval_rejected(self, market, inference):
        with pytest.raises(ConfigError):
            ScanOrchestrator(market, inference, settings=_settings().with_changes(scan_interval_minutes=7))


# ---------------------------------------------------------------------------
# tick
# ---------------------------------------------------------------------------


class TestTick:
    def test_far_from_boundary_is_noop(self, make_orch, market):
        orch = make_orch()
        assert orch.tick(_ts(10, 7, 30)) is False
        assert market.calls == []

    def test_near_boundary_sweeps_in_order(self, make_orch, market, inference):
        orch = make_orch(watchlist=("BTC", "ETH", "SOL"))
        assert orch.tick(_ts(10, 14, 59)) is True
        assert market.symbols_fetched() == ["BTC", "ETH", "SOL"]
        assert inference.calls == ["BTC", "ETH", "SOL"]
        assert orch.sweep_count == 1
        assert orch.phase is ScanPhase.IDLE
        assert orch.view.is_scanning is False

    def test_same_boundary_only_once(self, make_orch):
        orch = make_orch()
        assert orch.tick(_ts(10, 14, 59)) is True
        assert orch.tick(_ts(10, 15, 0)) is False
        assert orch.sweep_count == 1

    def test_next_boundary_sweeps_again(self, make_orch):
        orch = make_orch()
        orch.tick(_ts(10, 14, 59))
        assert orch.tick(_ts(10, 29, 59)) is True
        assert orch.sweep_count == 2

    def test_skipped_while_user_switching(self, make_orch, clock, market):
        orch = make_orch()
        clock.now = _ts(10, 14, 57)
        orch.set_foreground_symbol("ETH")
        calls_before = len(market.calls)
        assert orch.is_user_switching is True
        assert orch.tick(_ts(10, 14, 59)) is False
        assert len(market.calls) == calls_before

    def test_guard_expires(self, make_orch, clock):
        orch = make_orch()
        orch.set_foreground_symbol("ETH")
        clock.advance(orch.switch_guard_s + 0.1)
        assert orch.is_user_switching is False

    def test_uses_current_interval_label(self, make_orch, market):
        orch = make_orch(interval=5)
        orch.tick(_ts(10, 9, 59))
        assert {label for _, label in market.calls} == {"5m"}


# ---------------------------------------------------------------------------
# Sweep semantics
# ---------------------------------------------------------------------------


class TestSweep:
    def test_background_skipped_when_fresh(self, make_orch, inference):
        orch = make_orch()
        orch.run_sweep()
        report = orch.run_sweep()
        # foreground is always re-analyzed, ETH's candle has not moved
        assert inference.calls == ["BTC", "ETH", "BTC"]
        assert [o.status for o in report.outcomes] == ["analyzed", "fresh"]

    def test_background_reanalyzed_on_new_candle(self, make_orch, market, inference):
        orch = make_orch()
        orch.run_sweep()
        market.latest["ETH"] = 2_000
        orch.run_sweep()
        assert inference.calls.count("ETH") == 2
        assert orch.staleness.last_analyzed("ETH") == 2_000

    def test_delay_between_symbols(self, make_orch):
        sleeps: list[float] = []
        orch = make_orch(sleep=sleeps.append, watchlist=("BTC", "ETH", "SOL"), delay=6.0)
        orch.run_sweep()
        assert sleeps == [6.0, 6.0]

    def test_fetch_failure_isolated(self, make_orch, market, inference):
        orch = make_orch(watchlist=("BTC", "ETH", "SOL"))
        market.fail.add("ETH")
        report = orch.run_sweep()
        assert [o.status for o in report.outcomes] == ["analyzed", "fetch_failed", "analyzed"]
        assert "ETH" not in inference.calls
        assert "ETH" not in orch.staleness
        # background failure does not surface on the foreground view
        assert orch.view.error is None

    def test_analysis_failure_leaves_symbol_stale(self, make_orch, inference):
        orch = make_orch()
        inference.fail.add("ETH")
        report = orch.run_sweep()
        assert report.outcomes[1].status == "analysis_failed"
        assert orch.staleness.is_stale("ETH", 1_000) is True
        inference.fail.clear()
        orch.run_sweep()
        assert inference.calls.count("ETH") == 2

    def test_foreground_failure_published(self, make_orch, market):
        orch = make_orch()
        market.fail.add("BTC")
        orch.run_sweep()
        view = orch.view
        assert "Market data unavailable for BTC" in view.error
        assert view.loading is False

    def test_concurrent_sweep_skipped(self, make_orch, market):
        orch = make_orch()
        nested: list[Any] = []
        market.on_fetch = lambda _sym: nested.append(orch.run_sweep())
        orch.run_sweep()
        assert nested[0].skipped is True
        assert orch.sweep_count == 1

    def test_phase_sweeping_during_sweep(self, make_orch, market):
        orch = make_orch()
        seen: list[Any] = []
        market.on_fetch = lambda _sym: seen.append((orch.phase, orch.view.is_scanning))
        orch.run_sweep()
        assert seen == [(ScanPhase.SWEEPING, True)]

    def test_aborted_by_user_switch(self, make_orch, market, inference):
        holder: dict[str, ScanOrchestrator] = {}

        def _sleep(_s: float) -> None:
            holder["orch"].set_foreground_symbol("SOL")

        orch = make_orch(sleep=_sleep, watchlist=("BTC", "ETH", "SOL"))
        holder["orch"] = orch
        report = orch.run_sweep()
        assert report.aborted is True
        assert report.symbols == ["BTC"]
        assert "ETH" not in market.symbols_fetched()
        assert orch.foreground_symbol == "SOL"
        assert orch.view.last_analysis.reasoning == ("SOL reason",)
        assert orch.phase is ScanPhase.IDLE

    def test_aborted_by_close(self, make_orch):
        holder: dict[str, ScanOrchestrator] = {}
        orch = make_orch(sleep=lambda _s: holder["orch"].close())
        holder["orch"] = orch
        assert orch.run_sweep().aborted is True

    def test_symbol_removed_mid_sweep_skipped(self, make_orch, market):
        holder: dict[str, ScanOrchestrator] = {}
        orch = make_orch(sleep=lambda _s: holder["orch"].remove_symbol("SOL"),
                         watchlist=("BTC", "ETH", "SOL"), delay=1.0)
        holder["orch"] = orch
        report = orch.run_sweep()
        assert [o.status for o in report.outcomes][-1] == "skipped"
        assert "SOL" not in market.symbols_fetched()


# ---------------------------------------------------------------------------
# Stale-result discard
# ---------------------------------------------------------------------------


class TestFetchToken:
    def test_result_for_old_foreground_not_published(self, make_orch, inference):
        orch = make_orch()
        holder: dict[str, ScanOrchestrator] = {"orch": orch}
        inference.on_analyze = lambda _sym: holder["orch"].set_foreground_symbol("ETH")
        outcome = orch.refresh_foreground()  # BTC; switch to ETH happens mid-analysis
        assert outcome.symbol == "BTC"
        assert outcome.status == "analyzed"
        assert outcome.published is False
        view = orch.view
        assert view.symbol == "ETH"
        assert view.last_analysis.reasoning == ("ETH reason",)
        assert view.price == 3200.0
        # the stale result still counts for staleness
        assert orch.staleness.last_analyzed("BTC") == 1_000

    def test_second_refresh_supersedes_first(self, make_orch, inference):
        orch = make_orch()
        holder: dict[str, ScanOrchestrator] = {"orch": orch}
        inner: list[Any] = []
        inference.on_analyze = lambda _sym: inner.append(holder["orch"].refresh_foreground())
        outer = orch.refresh_foreground()
        assert inner[0].published is True
        assert outer.published is False

    def test_published_versions_increase(self, make_orch):
        orch = make_orch()
        versions: list[int] = []
        orch.subscribe(lambda v: versions.append(v.version))
        orch.refresh_foreground()
        assert versions == sorted(versions)
        assert len(versions) >= 3


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------


class TestUserActions:
    def test_set_foreground_resets_and_loads(self, make_orch, market, inference):
        orch = make_orch()
        states: list[ViewState] = []
        orch.subscribe(states.append)
        outcome = orch.set_foreground_symbol("eth")
        assert outcome.status == "analyzed"
        assert outcome.published is True
        # first publication is the reset view for the new symbol
        assert states[0].symbol == "ETH"
        assert states[0].loading is True
        assert states[0].last_analysis is None
        assert states[0].candles == ()
        assert orch.view.price == 3200.0
        assert inference.calls == ["ETH"]

    def test_set_foreground_always_forces_analysis(self, make_orch, inference):
        orch = make_orch()
        orch.run_sweep()
        orch.set_foreground_symbol("ETH")
        assert inference.calls == ["BTC", "ETH", "ETH"]

    def test_set_foreground_unknown_symbol(self, make_orch):
        orch = make_orch()
        with pytest.raises(ValueError):
            orch.set_foreground_symbol("XRP")
        assert orch.foreground_symbol == "BTC"

    def test_refresh_foreground_forces(self, make_orch, inference):
        orch = make_orch()
        orch.refresh_foreground()
        orch.refresh_foreground()
        assert inference.calls == ["BTC", "BTC"]

    def test_add_symbol(self, make_orch, inference, tmp_path):
        store = SettingsStore(tmp_path / "settings.json")
        orch = make_orch(store=store)
        outcome = orch.add_symbol("xrpusdt")
        assert outcome.symbol == "XRP"
        assert orch.watchlist == ["BTC", "ETH", "XRP"]
        assert orch.foreground_symbol == "XRP"
        assert orch.view.watchlist == ("BTC", "ETH", "XRP")
        assert inference.calls == ["XRP"]
        assert store.load().watchlist == ("BTC", "ETH", "XRP")

    def test_add_existing_switches_without_duplicate(self, make_orch):
        orch = make_orch()
        orch.add_symbol("ETH")
        assert orch.watchlist == ["BTC", "ETH"]
        assert orch.foreground_symbol == "ETH"

    def test_add_invalid(self, make_orch):
        with pytest.raises(ValueError):
            make_orch().add_symbol("")

    def test_remove_foreground_selects_successor(self, make_orch, inference):
        orch = make_orch(watchlist=("BTC", "ETH", "SOL"))
        outcome = orch.remove_symbol("BTC")
        assert outcome is not None and outcome.symbol == "ETH"
        assert orch.foreground_symbol == "ETH"
        assert orch.watchlist == ["ETH", "SOL"]
        assert inference.calls == ["ETH"]

    def test_remove_last_reseeds_default(self, make_orch):
        orch = make_orch(watchlist=("ETH",))
        outcome = orch.remove_symbol("ETH")
        assert orch.watchlist == ["BTC"]
        assert orch.foreground_symbol == "BTC"
        assert outcome.symbol == "BTC"

    def test_remove_background(self, make_orch, inference, tmp_path):
        store = SettingsStore(tmp_path / "settings.json")
        orch = make_orch(store=store)
        assert orch.remove_symbol("ETH") is None
        assert orch.view.watchlist == ("BTC",)
        assert inference.calls == []
        assert store.load().watchlist == ("BTC",)

    def test_remove_unknown(self, make_orch):
        orch = make_orch()
        assert orch.remove_symbol("DOGE") is None
        assert orch.watchlist == ["BTC", "ETH"]

    def test_set_scan_interval(self, make_orch, market, tmp_path):
        store = SettingsStore(tmp_path / "settings.json")
        orch = make_orch(store=store)
        orch.set_scan_interval_minutes(5)
        assert orch.scan_interval_minutes == 5
        assert orch.view.scan_interval_minutes == 5
        assert store.load().scan_interval_minutes == 5
        orch.refresh_foreground()
        assert market.calls[-1] == ("BTC", "5m")

    def test_set_scan_interval_invalid(self, make_orch):
        orch = make_orch()
        with pytest.raises(ConfigError):
            orch.set_scan_interval_minutes(3)
        assert orch.scan_interval_minutes == 15


# ---------------------------------------------------------------------------
# Signal log
# ---------------------------------------------------------------------------


class TestSignalLog:
    def test_directional_results_logged_for_all_symbols(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 70.0), "ETH": (SELL, 65.0)}
        orch = make_orch()
        orch.run_sweep()
        log = orch.view.signal_log
        assert [(e.symbol, e.signal) for e in log] == [("ETH", SELL), ("BTC", BUY)]
        assert log[1].price == 65000.0

    def test_low_confidence_and_neutral_not_logged(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 59.0), "ETH": (NEUTRAL, 95.0)}
        orch = make_orch()
        orch.run_sweep()
        assert orch.view.signal_log == ()


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class TestNotifications:
    def test_end_to_end_btc_eth(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 90.0), "ETH": (SELL, 80.0)}
        orch = make_orch(notify=_notify())
        report = orch.run_sweep()
        assert [o.notified for o in report.outcomes] == [True, True]
        sent = _FakeNotifier.instances[-1].sent
        assert len(sent) == 2
        assert "Pair: *BTC/USDT*" in sent[0]
        assert "🟢 BUY" in sent[0]
        assert "Pair: *ETH/USDT*" in sent[1]
        assert "🔴 SELL" in sent[1]

    def test_end_to_end_btc_buy_eth_inference_fails(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 90.0)}
        inference.fail = {"ETH"}
        orch = make_orch(notify=_notify(), interval=15)
        report = orch.run_sweep()
        assert [o.status for o in report.outcomes] == ["analyzed", "analysis_failed"]

        log = orch.view.signal_log
        assert [(e.symbol, e.signal) for e in log] == [("BTC", BUY)]
        sent = _FakeNotifier.instances[-1].sent
        assert len(sent) == 1
        assert "Pair: *BTC/USDT*" in sent[0]
        assert orch.view.error is None
        assert "ETH" not in orch.staleness

        inference.calls.clear()
        orch.run_sweep()
        assert "ETH" in inference.calls

    def test_once_per_bucket(self, make_orch, inference, clock):
        inference.signals = {"BTC": (BUY, 90.0)}
        orch = make_orch(notify=_notify())
        orch.refresh_foreground()
        orch.refresh_foreground()
        clock.advance(60)
        orch.refresh_foreground()
        assert len(_FakeNotifier.instances[-1].sent) == 1
        clock.advance(15 * 60)
        orch.refresh_foreground()
        assert len(_FakeNotifier.instances[-1].sent) == 2

    def test_below_threshold_not_sent(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 74.0)}
        orch = make_orch(notify=_notify(min_conf=75.0))
        assert orch.refresh_foreground().notified is False
        assert _FakeNotifier.instances[-1].sent == []

    def test_neutral_not_sent(self, make_orch, inference):
        inference.signals = {"BTC": (NEUTRAL, 99.0)}
        orch = make_orch(notify=_notify())
        orch.refresh_foreground()
        assert _FakeNotifier.instances[-1].sent == []

    def test_disabled_not_sent(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 99.0)}
        orch = make_orch(notify=_notify(enabled=False))
        orch.refresh_foreground()
        assert _FakeNotifier.instances[-1].sent == []
        assert orch.view.notify_error is None

    def test_enabled_but_unconfigured_warns_once(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 99.0)}
        orch = make_orch(notify=_notify(token=""))
        orch.refresh_foreground()
        first = orch.view
        assert "bot token / chat id missing" in first.notify_error
        orch.refresh_foreground()
        assert _FakeNotifier.instances[-1].sent == []

    def test_notifier_exception_does_not_break_refresh(self, make_orch, inference):
        inference.signals = {"BTC": (BUY, 99.0)}
        orch = make_orch(notify=_notify())
        _FakeNotifier.instances[-1].raises = True
        outcome = orch.refresh_foreground()
        assert outcome.status == "analyzed"
        assert outcome.notified is False
        # the attempt is recorded: no retry within the same candle
        _FakeNotifier.instances[-1].raises = False
        orch.refresh_foreground()
        assert _FakeNotifier.instances[-1].sent == []

    def test_set_notify_config_rebuilds_notifier(self, make_orch, inference, tmp_path):
        inference.signals = {"BTC": (BUY, 99.0)}
        store = SettingsStore(tmp_path / "settings.json")
        orch = make_orch(notify=_notify(token=""), store=store)
        orch.refresh_foreground()
        assert orch.view.notify_error is not None

        orch.set_notify_config(_notify(token="999:xyz"))
        assert orch.view.notify_error is None
        assert _FakeNotifier.instances[-1].config.bot_token == "999:xyz"
        assert store.load().notify.bot_token == "999:xyz"
        orch.refresh_foreground()
        assert len(_FakeNotifier.instances[-1].sent) == 1
