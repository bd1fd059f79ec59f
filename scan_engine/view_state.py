"""Observable dashboard snapshot and its publisher.

The orchestrator builds a new frozen :class:`ViewState` after every unit
of work and hands it to :class:`ViewStatePublisher`, which fans it out to
subscribers.  The presentation layer either subscribes or simply reads
``publisher.latest`` on each Streamlit rerun.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace

from scan_engine.common_types import AnalysisResult, Candle, SignalLogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewState:
    """Everything the dashboard displays, as one immutable snapshot."""

    symbol: str
    price: float = 0.0
    change_pct_24h: float = 0.0
    candles: tuple[Candle, ...] = ()
    last_analysis: AnalysisResult | None = None
    loading: bool = True
    analyzing: bool = False
    error: str | None = None
    is_scanning: bool = False
    scan_interval_minutes: int = 15
    watchlist: tuple[str, ...] = ()
    signal_log: tuple[SignalLogEntry, ...] = ()
    notify_error: str | None = None
    last_updated_ts: float = 0.0
    version: int = 0

    def evolve(self, **changes) -> ViewState:
        """Copy with *changes* applied and the version bumped."""
        return replace(self, version=self.version + 1, **changes)


Subscriber = Callable[[ViewState], None]


class ViewStatePublisher:
    """Thread-safe fan-out of :class:`ViewState` snapshots.

    Snapshots older than the last delivered ``version`` are dropped, so
    publications racing in from different threads never move subscribers
    backwards.  A failing subscriber is logged and does not affect others.
    """

    def __init__(self, initial: ViewState | None = None) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._latest: ViewState | None = initial
        self.publish_count: int = 0

    @property
    def latest(self) -> ViewState | None:
        with self._lock:
            return self._latest

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, state: ViewState) -> bool:
        """Deliver *state*; returns False if it was superseded already."""
        with self._lock:
            if self._latest is not None and state.version <= self._latest.version:
                return False
            self._latest = state
            self.publish_count += 1
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(state)
            except Exception:
                logger.exception("ViewState subscriber %r failed", callback)
        return True
