"""Notification de-duplication by (symbol, direction, time bucket).

A bucket is ``floor(now / bucket_s)``; the orchestrator passes the scan
interval as the bucket width, so one directional signal per symbol is
relayed at most once per candle.  This is coarser than the staleness
check: a symbol may be analyzed many times per bucket (the
foreground symbol is re-analyzed on every refresh) but notified once.

Dedup state is in-memory only and resets on restart, so exactly-once
delivery across restarts is not guaranteed.
"""

from __future__ import annotations

import logging
import math

from scan_engine.common_types import NEUTRAL

logger = logging.getLogger(__name__)


def bucket_index(now: float, bucket_s: float) -> int:
    if bucket_s <= 0:
        raise ValueError(f"bucket_s must be positive, got {bucket_s!r}")
    return math.floor(now / bucket_s)


def bucket_key(symbol: str, signal: str, now: float, bucket_s: float) -> str:
    """Dedup key, e.g. ``"BTC_BUY_1976340"``."""
    return f"{symbol}_{signal}_{bucket_index(now, bucket_s)}"


class NotificationDeduper:
    """Suppresses repeat notifications within one time bucket.

    Keys are kept per symbol; recording a key from a newer bucket drops the
    symbol's keys from older buckets so the map stays bounded.
    """

    def __init__(self) -> None:
        self._keys: dict[str, dict[str, int]] = {}

    def should_notify(
        self,
        symbol: str,
        signal: str,
        confidence: float,
        now: float,
        bucket_s: float,
        min_confidence: float,
    ) -> bool:
        if signal == NEUTRAL or confidence < min_confidence:
            return False
        key = bucket_key(symbol, signal, now, bucket_s)
        return key not in self._keys.get(symbol, {})

    def record_notified(self, symbol: str, signal: str, now: float, bucket_s: float) -> None:
        bucket = bucket_index(now, bucket_s)
        keys = self._keys.setdefault(symbol, {})
        for old in [k for k, b in keys.items() if b < bucket]:
            del keys[old]
        keys[bucket_key(symbol, signal, now, bucket_s)] = bucket
        logger.debug("Recorded notification key for %s %s (bucket %d)", symbol, signal, bucket)
