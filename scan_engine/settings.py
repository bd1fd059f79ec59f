"""Dashboard settings: env-var defaults plus a JSON settings file.

Defaults are read from environment variables at instantiation:

    DASHBOARD_WATCHLIST=BTC,ETH,SOL,NEAR,BNB,DOGE
    DASHBOARD_SCAN_INTERVAL_MIN=15
    DASHBOARD_LOG_MIN_CONFIDENCE=60
    DASHBOARD_SYMBOL_DELAY_S=6
    DASHBOARD_MODEL_HINT=

    DASHBOARD_NOTIFY_ENABLED=1
    DASHBOARD_NOTIFY_MIN_CONFIDENCE=75
    DASHBOARD_TELEGRAM_BOT_TOKEN=123456:ABC-DEF...
    DASHBOARD_TELEGRAM_CHAT_ID=-1001234567890

User changes made in the dashboard are persisted to
``artifacts/dashboard/settings.json`` (``DASHBOARD_SETTINGS_PATH``) and
win over the environment on the next start.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from scan_engine.clock import SUPPORTED_INTERVALS

logger = logging.getLogger(__name__)

DEFAULT_WATCHLIST: tuple[str, ...] = ("BTC", "ETH", "SOL", "NEAR", "BNB", "DOGE")
DEFAULT_SETTINGS_PATH = "artifacts/dashboard/settings.json"


# ── Safe env-var parsers ────────────────────────────────────────

def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_list(key: str, default: tuple[str, ...]) -> list[str]:
    raw = os.getenv(key, "")
    items = [s.strip() for s in raw.split(",") if s.strip()]
    return items or list(default)


def _env_interval() -> int:
    value = _env_int("DASHBOARD_SCAN_INTERVAL_MIN", 15)
    return value if value in SUPPORTED_INTERVALS else 15


# ── Configuration ───────────────────────────────────────────────

@dataclass(frozen=True)
class NotifyConfig:
    """Telegram relay settings."""

    enabled: bool = field(
        default_factory=lambda: os.getenv("DASHBOARD_NOTIFY_ENABLED", "0") == "1",
    )
    bot_token: str = field(
        default_factory=lambda: os.getenv("DASHBOARD_TELEGRAM_BOT_TOKEN", ""),
        repr=False,
    )
    chat_id: str = field(
        default_factory=lambda: os.getenv("DASHBOARD_TELEGRAM_CHAT_ID", ""),
    )
    min_confidence: float = field(
        default_factory=lambda: _env_float("DASHBOARD_NOTIFY_MIN_CONFIDENCE", 75.0),
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "bot_token": self.bot_token,
            "chat_id": self.chat_id,
            "min_confidence": self.min_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotifyConfig:
        base = cls()
        try:
            min_conf = float(data.get("min_confidence", base.min_confidence))
        except (TypeError, ValueError):
            min_conf = base.min_confidence
        enabled = data.get("enabled", base.enabled)
        return cls(
            enabled=enabled if isinstance(enabled, bool) else base.enabled,
            bot_token=str(data.get("bot_token", base.bot_token) or ""),
            chat_id=str(data.get("chat_id", base.chat_id) or ""),
            min_confidence=min_conf,
        )


@dataclass(frozen=True)
class DashboardSettings:
    """Everything the orchestrator needs from persisted settings."""

    watchlist: tuple[str, ...] = field(
        default_factory=lambda: tuple(_env_list("DASHBOARD_WATCHLIST", DEFAULT_WATCHLIST)),
    )
    scan_interval_minutes: int = field(default_factory=_env_interval)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    log_min_confidence: float = field(
        default_factory=lambda: _env_float("DASHBOARD_LOG_MIN_CONFIDENCE", 60.0),
    )
    inter_symbol_delay_s: float = field(
        default_factory=lambda: _env_float("DASHBOARD_SYMBOL_DELAY_S", 6.0),
    )
    model_hint: str = field(
        default_factory=lambda: os.getenv("DASHBOARD_MODEL_HINT", ""),
    )

    def with_changes(self, **changes: Any) -> DashboardSettings:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "watchlist": list(self.watchlist),
            "scan_interval_minutes": self.scan_interval_minutes,
            "notify": self.notify.to_dict(),
            "log_min_confidence": self.log_min_confidence,
            "inter_symbol_delay_s": self.inter_symbol_delay_s,
            "model_hint": self.model_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DashboardSettings:
        """Build settings from a (possibly partial or garbled) dict.

        Unknown keys are ignored; invalid values fall back to the
        env-derived defaults.
        """
        base = cls()
        watchlist = data.get("watchlist")
        if not isinstance(watchlist, list) or not all(isinstance(s, str) for s in watchlist):
            watchlist = list(base.watchlist)
        interval = data.get("scan_interval_minutes", base.scan_interval_minutes)
        if interval not in SUPPORTED_INTERVALS:
            interval = base.scan_interval_minutes
        notify = data.get("notify")
        return cls(
            watchlist=tuple(watchlist),
            scan_interval_minutes=interval,
            notify=NotifyConfig.from_dict(notify) if isinstance(notify, dict) else base.notify,
            log_min_confidence=_coerce_float(data.get("log_min_confidence"), base.log_min_confidence),
            inter_symbol_delay_s=max(
                _coerce_float(data.get("inter_symbol_delay_s"), base.inter_symbol_delay_s), 0.0,
            ),
            model_hint=str(data.get("model_hint") or base.model_hint),
        )


def _coerce_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class SettingsStore:
    """JSON-file settings store with atomic writes."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or os.getenv("DASHBOARD_SETTINGS_PATH", DEFAULT_SETTINGS_PATH))

    def load(self) -> DashboardSettings:
        """Load settings, falling back to env defaults when missing/corrupt."""
        if not self.path.exists():
            return DashboardSettings()
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            logger.warning("Failed to load settings from %s, using defaults", self.path)
            return DashboardSettings()
        if not isinstance(data, dict):
            logger.warning("Settings file %s is not an object, using defaults", self.path)
            return DashboardSettings()
        return DashboardSettings.from_dict(data)

    def save(self, settings: DashboardSettings) -> Path:
        """Persist *settings* (temp file + ``os.replace``)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(settings.to_dict(), indent=2, allow_nan=False)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, suffix=".tmp", prefix="settings_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Saved settings → %s", self.path)
        return self.path
