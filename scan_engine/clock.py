"""Interval alignment: when does the next candle close?

Pure functions of wall-clock time.  The scheduler calls
``seconds_until_next_boundary`` once per second; the dashboard uses
``format_countdown`` for the "next candle close" metric.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from scan_engine.error_taxonomy import ConfigError

SUPPORTED_INTERVALS: tuple[int, ...] = (1, 5, 15, 30, 60)

_INTERVAL_LABELS: dict[int, str] = {
    1: "1m",
    5: "5m",
    15: "15m",
    30: "30m",
    60: "1h",
}


def validate_interval(interval_minutes: int) -> int:
    """Return *interval_minutes* unchanged, or raise ``ConfigError``."""
    if interval_minutes not in SUPPORTED_INTERVALS:
        raise ConfigError(
            f"Unsupported scan interval {interval_minutes!r} "
            f"(expected one of {', '.join(map(str, SUPPORTED_INTERVALS))})"
        )
    return interval_minutes


def interval_label(interval_minutes: int) -> str:
    """Exchange candle-interval label for a scan interval (``15`` → ``"15m"``)."""
    return _INTERVAL_LABELS[validate_interval(interval_minutes)]


def next_boundary(now: datetime, interval_minutes: int) -> datetime:
    """Next wall-clock instant whose minute is a multiple of *interval_minutes*.

    Seconds and microseconds of the boundary are zero.  All supported
    intervals divide the hour, so alignment is computed from the top of the
    current hour and rolls over into the next hour naturally (interval 15 at
    minute 50 → minute 0 of the next hour).  An instant that already sits on
    a boundary is returned unchanged.
    """
    step = timedelta(minutes=validate_interval(interval_minutes))
    hour_start = now.replace(minute=0, second=0, microsecond=0)
    remainder = (now - hour_start) % step
    if not remainder:
        return now
    return now + (step - remainder)


def seconds_until_next_boundary(now: datetime, interval_minutes: int) -> float:
    """Seconds from *now* to the next boundary, in ``[0, interval_minutes * 60)``.

    ``0`` means the boundary is now.  Callers treat any value ``<= 0``
    (e.g. after clock drift) as "boundary reached".
    """
    return (next_boundary(now, interval_minutes) - now).total_seconds()


def format_countdown(seconds: float) -> str:
    """``MM:SS`` countdown; negative input renders as ``00:00``."""
    total = max(int(seconds), 0)
    mins, secs = divmod(total, 60)
    return f"{mins:02d}:{secs:02d}"
