"""Scan orchestration: when to poll, when to re-analyze, whether to notify.

``ScanOrchestrator`` owns the watchlist, the foreground-symbol pointer, the
sweep phase, the user-switch guard, and the staleness / dedup / signal-log
state.  It is driven from two directions:

* the :class:`~scan_engine.scheduler.ScanScheduler` thread calls
  :meth:`ScanOrchestrator.tick` once per second; near an interval boundary
  the tick runs a sweep over the whole watchlist, one symbol at a time;
* the dashboard calls :meth:`set_foreground_symbol`, :meth:`add_symbol`,
  :meth:`remove_symbol` and :meth:`refresh_foreground`, each of which runs
  a forced fetch + analysis of the foreground symbol on the caller's thread.

All shared state is guarded by one lock; collaborator calls (network I/O)
always run outside it.  Every fetch captures a :class:`FetchToken`
(symbol + foreground generation) when it starts and only publishes to the
view if the token is still current when it finishes, so a slow background
result can never overwrite a view the user has since switched away from.

Usage::

    orch = ScanOrchestrator(BinanceMarketData(), GeminiAnalyzer(),
                            settings=store.load(), store=store,
                            notifier_factory=TelegramNotifier)
    orch.subscribe(lambda view: print(view.symbol, view.price))
    orch.refresh_foreground()
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any

from scan_engine.clock import interval_label, seconds_until_next_boundary, validate_interval
from scan_engine.common_types import AnalysisResult
from scan_engine.dedup import NotificationDeduper
from scan_engine.error_taxonomy import MarketDataError
from scan_engine.messages import format_signal_message
from scan_engine.settings import DashboardSettings, NotifyConfig, SettingsStore
from scan_engine.signal_log import DEFAULT_CAPACITY, SignalLog
from scan_engine.staleness import StalenessTracker
from scan_engine.view_state import Subscriber, ViewState, ViewStatePublisher
from scan_engine.watchlist import Watchlist, normalize_symbol

logger = logging.getLogger(__name__)


class ScanPhase(str, Enum):
    IDLE = "IDLE"
    SWEEPING = "SWEEPING"


@dataclass(frozen=True)
class FetchToken:
    """Identity of a fetch: the symbol and the foreground generation at start."""

    symbol: str
    generation: int


@dataclass
class SymbolOutcome:
    """Result of processing one symbol (sweep slot or forced refresh)."""

    symbol: str
    status: str  # analyzed | fresh | fetch_failed | analysis_failed | skipped
    signal: str = ""
    error: str = ""
    notified: bool = False
    published: bool = False


@dataclass
class SweepReport:
    started_ts: float
    finished_ts: float = 0.0
    outcomes: list[SymbolOutcome] = field(default_factory=list)
    aborted: bool = False
    skipped: bool = False  # another sweep was already running

    @property
    def symbols(self) -> list[str]:
        return [o.symbol for o in self.outcomes]


class ScanOrchestrator:
    """Watchlist sweeps, forced refreshes and notification gating.

    Parameters
    ----------
    market : market-data client
        ``fetch_candles(symbol, interval_label)`` / ``fetch_ticker(symbol)``.
    inference : inference client
        ``analyze(symbol, candles, model_hint)`` → ``AnalysisResult``.
    settings : DashboardSettings, optional
        Initial settings (default: env-derived defaults).
    store : SettingsStore, optional
        Persists settings after every mutation.
    notifier_factory : callable, optional
        ``factory(NotifyConfig)`` → object with ``send(message) -> bool``.
        Without it no notifications are sent.
    clock, sleep : callables, optional
        Injected for tests; ``sleep`` paces symbols inside a sweep.
    tz : tzinfo, optional
        Time zone for boundary alignment (default: UTC, the zone Binance
        opens its klines in).
    """

    def __init__(
        self,
        market: Any,
        inference: Any,
        *,
        settings: DashboardSettings | None = None,
        store: SettingsStore | None = None,
        notifier_factory: Callable[[NotifyConfig], Any] | None = None,
        publisher: ViewStatePublisher | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] | None = None,
        tz: tzinfo = timezone.utc,
        tick_epsilon_s: float = 2.0,
        switch_guard_s: float = 5.0,
        signal_log_capacity: int = DEFAULT_CAPACITY,
        formatter: Callable[..., str] = format_signal_message,
    ) -> None:
        self._market = market
        self._inference = inference
        self._store = store
        self._notifier_factory = notifier_factory
        self._publisher = publisher or ViewStatePublisher()
        self._clock = clock
        self._closed = threading.Event()
        self._sleep = sleep or self._closed.wait
        self._tz = tz
        self._formatter = formatter
        self.tick_epsilon_s = tick_epsilon_s
        self.switch_guard_s = switch_guard_s

        settings = settings or DashboardSettings()
        self._interval = validate_interval(settings.scan_interval_minutes)
        self._watchlist = Watchlist(settings.watchlist)
        self._settings = settings.with_changes(watchlist=tuple(self._watchlist.to_list()))
        self._notify_cfg = settings.notify
        self._notifier = notifier_factory(settings.notify) if notifier_factory else None

        self._staleness = StalenessTracker()
        self._dedup = NotificationDeduper()
        self._signal_log = SignalLog(signal_log_capacity, settings.log_min_confidence)

        self._lock = threading.Lock()
        self._notify_lock = threading.Lock()
        self._phase = ScanPhase.IDLE
        self._foreground = self._watchlist.first
        self._generation = 0
        self._switch_seq = 0
        self._guard_until = 0.0
        self._switch_inflight = 0
        self._last_sweep_boundary: int | None = None
        self._notify_warned = False

        # Observable counters (read from the UI thread)
        self.sweep_count: int = 0
        self.last_sweep: SweepReport | None = None

        self._view = ViewState(
            symbol=self._foreground,
            scan_interval_minutes=self._interval,
            watchlist=tuple(self._watchlist.to_list()),
            last_updated_ts=self._clock(),
        )
        self._publisher.publish(self._view)

    # ── Read-only accessors ─────────────────────────────────

    @property
    def foreground_symbol(self) -> str:
        with self._lock:
            return self._foreground

    @property
    def phase(self) -> ScanPhase:
        with self._lock:
            return self._phase

    @property
    def is_scanning(self) -> bool:
        return self.phase is ScanPhase.SWEEPING

    @property
    def is_user_switching(self) -> bool:
        with self._lock:
            return self._guard_active_locked(self._clock())

    @property
    def watchlist(self) -> list[str]:
        with self._lock:
            return self._watchlist.to_list()

    @property
    def scan_interval_minutes(self) -> int:
        with self._lock:
            return self._interval

    @property
    def notify_config(self) -> NotifyConfig:
        with self._lock:
            return self._notify_cfg

    @property
    def settings(self) -> DashboardSettings:
        with self._lock:
            return self._settings

    @property
    def staleness(self) -> StalenessTracker:
        return self._staleness

    @property
    def view(self) -> ViewState:
        with self._lock:
            return self._view

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive every published :class:`ViewState`; returns an unsubscribe callable."""
        return self._publisher.subscribe(callback)

    def seconds_until_next_scan(self, now: float | None = None) -> float:
        ts = self._clock() if now is None else now
        with self._lock:
            interval = self._interval
        return seconds_until_next_boundary(datetime.fromtimestamp(ts, self._tz), interval)

    # ── Timer entry point ───────────────────────────────────

    def tick(self, now: float | None = None) -> bool:
        """Start a sweep if an interval boundary is imminent.

        Returns True if a sweep ran.  A tick while sweeping, while the
        user-switch guard is active, or for a boundary that was already
        swept is a no-op.
        """
        ts = self._clock() if now is None else now
        remaining = self.seconds_until_next_scan(ts)
        if remaining > self.tick_epsilon_s:
            return False
        boundary = int(round((ts + max(remaining, 0.0)) / 60.0))
        with self._lock:
            if self._phase is not ScanPhase.IDLE:
                return False
            if self._guard_active_locked(ts):
                logger.debug("Boundary tick skipped: user is switching symbols")
                return False
            if self._last_sweep_boundary == boundary:
                return False
            self._last_sweep_boundary = boundary
        logger.info("Interval boundary in %.1fs, starting sweep", max(remaining, 0.0))
        report = self.run_sweep()
        return not report.skipped

    # ── Sweep ───────────────────────────────────────────────

    def run_sweep(self) -> SweepReport:
        """Process every watched symbol in order, one at a time."""
        with self._lock:
            if self._phase is ScanPhase.SWEEPING:
                logger.debug("Sweep already in progress")
                return SweepReport(started_ts=self._clock(), skipped=True)
            self._phase = ScanPhase.SWEEPING
            symbols = self._watchlist.to_list()
            switch_seq = self._switch_seq
            delay = self._settings.inter_symbol_delay_s
            state = self._evolve_locked(is_scanning=True)
        self._publisher.publish(state)

        report = SweepReport(started_ts=self._clock())
        logger.info("Sweep started: %s", ", ".join(symbols))
        try:
            for idx, symbol in enumerate(symbols):
                if idx > 0 and delay > 0:
                    self._sleep(delay)
                if self._should_abort(switch_seq):
                    report.aborted = True
                    logger.info(
                        "Sweep aborted before %s (%d/%d done)", symbol, idx, len(symbols),
                    )
                    break
                with self._lock:
                    still_watched = symbol in self._watchlist
                if not still_watched:
                    report.outcomes.append(SymbolOutcome(symbol, "skipped"))
                    continue
                report.outcomes.append(self._process_symbol(symbol, force=False))
        finally:
            report.finished_ts = self._clock()
            with self._lock:
                self._phase = ScanPhase.IDLE
                self.sweep_count += 1
                self.last_sweep = report
                state = self._evolve_locked(is_scanning=False)
            self._publisher.publish(state)

        failed = sum(1 for o in report.outcomes if o.status.endswith("failed"))
        logger.info(
            "Sweep finished in %.1fs: %d processed, %d failed%s",
            report.finished_ts - report.started_ts,
            len(report.outcomes),
            failed,
            " (aborted)" if report.aborted else "",
        )
        return report

    def _should_abort(self, switch_seq: int) -> bool:
        if self._closed.is_set():
            return True
        with self._lock:
            return self._switch_seq != switch_seq or self._guard_active_locked(self._clock())

    # ── User actions ────────────────────────────────────────

    def set_foreground_symbol(self, raw_symbol: str) -> SymbolOutcome:
        """Show *raw_symbol* and force a fresh fetch + analysis for it."""
        symbol = normalize_symbol(raw_symbol)
        with self._lock:
            if symbol not in self._watchlist:
                raise ValueError(f"{symbol} is not on the watchlist")
            token, state = self._switch_foreground_locked(symbol)
        self._publisher.publish(state)
        return self._run_switch_refresh(token)

    def add_symbol(self, raw_symbol: str) -> SymbolOutcome:
        """Watch *raw_symbol*, make it the foreground, and analyze it now."""
        with self._lock:
            symbol, added = self._watchlist.add(raw_symbol)
            if added:
                self._settings = self._settings.with_changes(
                    watchlist=tuple(self._watchlist.to_list()),
                )
            token, state = self._switch_foreground_locked(symbol)
        if added:
            self._persist()
        self._publisher.publish(state)
        return self._run_switch_refresh(token)

    def remove_symbol(self, raw_symbol: str) -> SymbolOutcome | None:
        """Stop watching *raw_symbol*.

        If it was the foreground, the neighbouring symbol (or the re-seeded
        default when the list became empty) takes over and is analyzed now;
        that refresh's outcome is returned.
        """
        symbol = normalize_symbol(raw_symbol)
        token: FetchToken | None = None
        with self._lock:
            previous = self._watchlist.to_list()
            if not self._watchlist.remove(symbol):
                return None
            self._settings = self._settings.with_changes(
                watchlist=tuple(self._watchlist.to_list()),
            )
            if symbol == self._foreground or self._foreground not in self._watchlist:
                successor = self._watchlist.successor(symbol, previous)
                token, state = self._switch_foreground_locked(successor)
            else:
                state = self._evolve_locked(watchlist=tuple(self._watchlist.to_list()))
        self._persist()
        self._publisher.publish(state)
        if token is None:
            return None
        return self._run_switch_refresh(token)

    def refresh_foreground(self) -> SymbolOutcome:
        """Manual re-analysis of the current foreground symbol."""
        with self._lock:
            self._generation += 1
            token = FetchToken(self._foreground, self._generation)
            state = self._evolve_locked(error=None, loading=not self._view.candles)
        self._publisher.publish(state)
        return self._process_symbol(token.symbol, force=True, token=token)

    def set_scan_interval_minutes(self, minutes: int) -> None:
        validate_interval(minutes)
        with self._lock:
            if minutes == self._interval:
                return
            self._interval = minutes
            self._last_sweep_boundary = None
            self._settings = self._settings.with_changes(scan_interval_minutes=minutes)
            state = self._evolve_locked(scan_interval_minutes=minutes)
        logger.info("Scan interval set to %d min", minutes)
        self._persist()
        self._publisher.publish(state)

    def set_notify_config(self, config: NotifyConfig) -> None:
        notifier = self._notifier_factory(config) if self._notifier_factory else None
        with self._lock:
            self._notify_cfg = config
            self._notifier = notifier
            self._notify_warned = False
            self._settings = self._settings.with_changes(notify=config)
            state = self._evolve_locked(notify_error=None)
        logger.info(
            "Notify config updated (enabled=%s, configured=%s, min_confidence=%.0f)",
            config.enabled, config.is_configured, config.min_confidence,
        )
        self._persist()
        self._publisher.publish(state)

    def close(self) -> None:
        """Interrupt pacing sleeps and abort any running sweep."""
        self._closed.set()

    # ── Per-symbol unit of work ─────────────────────────────

    def _process_symbol(
        self,
        symbol: str,
        *,
        force: bool,
        token: FetchToken | None = None,
    ) -> SymbolOutcome:
        with self._lock:
            if token is None and symbol == self._foreground:
                token = FetchToken(symbol, self._generation)
            label = interval_label(self._interval)
            model_hint = self._settings.model_hint or None

        try:
            candles = list(self._market.fetch_candles(symbol, label))
            ticker = self._market.fetch_ticker(symbol)
            if not candles:
                raise MarketDataError(f"no candles returned for {symbol}", symbol=symbol)
        except Exception as exc:
            logger.warning("Market data fetch failed for %s: %s", symbol, exc)
            published = self._publish_for(
                token, loading=False, analyzing=False,
                error=f"Market data unavailable for {symbol}: {exc}",
            )
            return SymbolOutcome(symbol, "fetch_failed", error=str(exc), published=published)

        latest_ts = candles[-1].open_time
        published = self._publish_for(
            token,
            price=ticker.last_price,
            change_pct_24h=ticker.change_pct_24h,
            candles=tuple(candles),
            loading=False,
            error=None,
        )
        with self._lock:
            needs_analysis = (
                force
                or (token is not None and self._is_current_locked(token))
                or self._staleness.is_stale(symbol, latest_ts)
            )
        if not needs_analysis:
            logger.debug("%s candle %d already analyzed, skipping inference", symbol, latest_ts)
            return SymbolOutcome(symbol, "fresh", published=published)

        self._publish_for(token, analyzing=True)
        try:
            analysis = self._inference.analyze(symbol, candles, model_hint)
        except Exception as exc:
            logger.warning("Analysis failed for %s: %s", symbol, exc)
            published = self._publish_for(
                token, analyzing=False, error=f"Analysis failed for {symbol}: {exc}",
            )
            return SymbolOutcome(symbol, "analysis_failed", error=str(exc), published=published)

        now = self._clock()
        with self._lock:
            self._staleness.mark_analyzed(symbol, latest_ts)
            entry = self._signal_log.record(symbol, analysis, ticker.last_price, now)
            if entry is not None:
                log_state = self._evolve_locked(signal_log=self._signal_log.entries())
            else:
                log_state = None
        if log_state is not None:
            self._publisher.publish(log_state)
        published = self._publish_for(token, last_analysis=analysis, analyzing=False, error=None)
        logger.info(
            "%s analyzed: %s %.0f%% (%s)",
            symbol, analysis.signal, analysis.confidence, "foreground" if published else "background",
        )

        notified = self._maybe_notify(symbol, analysis, ticker.last_price, now)
        return SymbolOutcome(
            symbol, "analyzed", signal=analysis.signal, notified=notified, published=published,
        )

    def _maybe_notify(self, symbol: str, analysis: AnalysisResult, price: float, now: float) -> bool:
        with self._notify_lock:
            with self._lock:
                cfg = self._notify_cfg
                notifier = self._notifier
                interval = self._interval
                if not cfg.enabled:
                    return False
                if notifier is None or not cfg.is_configured:
                    state = None
                    if not self._notify_warned:
                        self._notify_warned = True
                        state = self._evolve_locked(
                            notify_error="Notifications enabled but bot token / chat id missing",
                        )
                    should = False
                else:
                    state = None
                    should = self._dedup.should_notify(
                        symbol, analysis.signal, analysis.confidence, now,
                        interval * 60, cfg.min_confidence,
                    )
            if state is not None:
                logger.warning("Notifications enabled but notifier is not configured")
                self._publisher.publish(state)
            if not should:
                return False

            message = self._formatter(symbol, analysis, price, interval)
            try:
                ok = bool(notifier.send(message))
            except Exception:
                logger.exception("Notifier raised for %s", symbol)
                ok = False
            with self._lock:
                self._dedup.record_notified(symbol, analysis.signal, now, interval * 60)
            if ok:
                logger.info("Notification sent for %s %s", symbol, analysis.signal)
            else:
                logger.warning("Notification for %s %s failed", symbol, analysis.signal)
            return ok

    # ── Internals (callers hold self._lock where noted) ─────

    def _run_switch_refresh(self, token: FetchToken) -> SymbolOutcome:
        try:
            return self._process_symbol(token.symbol, force=True, token=token)
        finally:
            with self._lock:
                self._switch_inflight -= 1

    def _switch_foreground_locked(self, symbol: str) -> tuple[FetchToken, ViewState]:
        changed = symbol != self._foreground
        self._foreground = symbol
        self._generation += 1
        self._switch_seq += 1
        self._switch_inflight += 1
        self._guard_until = self._clock() + self.switch_guard_s
        changes: dict[str, Any] = {
            "symbol": symbol,
            "error": None,
            "watchlist": tuple(self._watchlist.to_list()),
        }
        if changed:
            changes.update(
                price=0.0, change_pct_24h=0.0, candles=(), last_analysis=None,
                loading=True, analyzing=False,
            )
            logger.info("Foreground symbol → %s", symbol)
        return FetchToken(symbol, self._generation), self._evolve_locked(**changes)

    def _guard_active_locked(self, now: float) -> bool:
        return self._switch_inflight > 0 or now < self._guard_until

    def _is_current_locked(self, token: FetchToken) -> bool:
        return token.symbol == self._foreground and token.generation == self._generation

    def _evolve_locked(self, **changes: Any) -> ViewState:
        self._view = self._view.evolve(last_updated_ts=self._clock(), **changes)
        return self._view

    def _publish_for(self, token: FetchToken | None, **changes: Any) -> bool:
        """Publish *changes* only if *token* still names the current foreground."""
        if token is None:
            return False
        with self._lock:
            if not self._is_current_locked(token):
                return False
            state = self._evolve_locked(**changes)
        self._publisher.publish(state)
        return True

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self.settings)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to persist settings: %s", exc)
