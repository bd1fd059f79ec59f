"""Background timer thread for the scan engine.

Moves the once-per-second boundary check off the Streamlit rerun loop
into a dedicated ``threading.Thread``.  Sweeps run on this thread; the
dashboard reads the orchestrator's published ``ViewState`` on each rerun,
so the UI never blocks on network I/O.

User actions that trigger a forced refresh (symbol switch, add/remove,
manual analyse) can be handed to :meth:`ScanScheduler.submit`, which runs
them on a short-lived daemon worker.

Usage in ``streamlit_dashboard.py``::

    from scan_engine.scheduler import ScanScheduler

    scheduler = ScanScheduler(orchestrator)
    scheduler.start()

    # On a button click:
    scheduler.submit(orchestrator.set_foreground_symbol, "ETH")
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class ScanScheduler:
    """Calls ``orchestrator.tick()`` every *tick_interval_s* seconds.

    Thread-safe: the orchestrator guards its own state; this class only
    exposes atomic status attributes (tick count, last error, …).

    Parameters
    ----------
    orchestrator : ScanOrchestrator
        Engine to drive.
    tick_interval_s : float
        Seconds between ticks (default 1.0).
    """

    def __init__(self, orchestrator: Any, tick_interval_s: float = 1.0) -> None:
        self._orchestrator = orchestrator
        self._tick_interval_s = tick_interval_s
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._workers: list[threading.Thread] = []

        # Observable status (read from Streamlit main thread)
        self.tick_count: int = 0
        self.sweeps_started: int = 0
        self.last_tick_ts: float = 0.0
        self.last_error: str = ""

    # ── Thread lifecycle ────────────────────────────────────

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the timer thread (idempotent)."""
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="scan-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scan scheduler started (tick=%.1fs)", self._tick_interval_s)

    def stop(self, timeout: float | None = None) -> None:
        """Signal the thread to stop; optionally join for *timeout* seconds."""
        self._stop_event.set()
        logger.info("Scan scheduler stop requested")
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout)

    def update_interval(self, tick_interval_s: float) -> None:
        """Change the tick period at runtime (thread-safe)."""
        with self._lock:
            self._tick_interval_s = tick_interval_s

    def _get_interval(self) -> float:
        with self._lock:
            return self._tick_interval_s

    # ── One-off user actions ────────────────────────────────

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> threading.Thread:
        """Run ``fn(*args, **kwargs)`` on a daemon worker thread."""

        def _runner() -> None:
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                logger.exception("User action %s failed", getattr(fn, "__name__", fn))
                self.last_error = str(exc)

        worker = threading.Thread(
            target=_runner,
            name=f"scan-action-{getattr(fn, '__name__', 'task')}",
            daemon=True,
        )
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    @property
    def pending_actions(self) -> int:
        with self._lock:
            return sum(1 for w in self._workers if w.is_alive())

    # ── Internal tick loop ──────────────────────────────────

    def tick_once(self) -> bool:
        """Run a single tick; returns True if it started a sweep."""
        self.last_tick_ts = time.time()
        self.tick_count += 1
        try:
            swept = self._orchestrator.tick()
        except Exception as exc:
            logger.exception("Scheduler tick failed")
            self.last_error = str(exc)
            return False
        if swept:
            self.sweeps_started += 1
            self.last_error = ""
        return bool(swept)

    def _run_loop(self) -> None:
        """Main loop running in the background thread."""
        logger.info("Scan scheduler loop entered")
        while not self._stop_event.is_set():
            self.tick_once()
            # Wait for the tick interval (interruptible by stop_event)
            if self._stop_event.wait(timeout=self._get_interval()):
                break
        logger.info("Scan scheduler loop exited")
