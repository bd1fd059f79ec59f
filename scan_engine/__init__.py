"""Polling and analysis orchestration for the crypto signal dashboard.

The package decides when each watched symbol is polled, when its candles
are re-submitted for inference, and whether a signal is new enough to be
relayed to the notifier.  Exchange, model and messaging clients are
plugged in from the top-level ``dashboard_*`` modules.
"""

from .orchestrator import ScanOrchestrator, ScanPhase, SweepReport
from .scheduler import ScanScheduler
from .settings import DashboardSettings, NotifyConfig, SettingsStore
from .view_state import ViewState

__all__: list[str] = [
    "DashboardSettings",
    "NotifyConfig",
    "ScanOrchestrator",
    "ScanPhase",
    "ScanScheduler",
    "SettingsStore",
    "SweepReport",
    "ViewState",
]
