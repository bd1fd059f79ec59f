"""Bounded in-memory log of recent directional signals (newest first)."""

from __future__ import annotations

from collections import deque

from scan_engine.common_types import AnalysisResult, SignalLogEntry

DEFAULT_CAPACITY = 20


class SignalLog:
    """Ring of the most recent :class:`SignalLogEntry` records.

    Entries are appended for every directional result whose confidence
    reaches ``min_confidence``, whether or not a notification went out.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, min_confidence: float = 60.0) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity!r}")
        self._entries: deque[SignalLogEntry] = deque(maxlen=capacity)
        self.min_confidence = min_confidence

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def qualifies(self, analysis: AnalysisResult) -> bool:
        return analysis.is_directional and analysis.confidence >= self.min_confidence

    def record(self, symbol: str, analysis: AnalysisResult, price: float, now: float) -> SignalLogEntry | None:
        """Append an entry if *analysis* qualifies; return it (or None)."""
        if not self.qualifies(analysis):
            return None
        entry = SignalLogEntry(
            time=now,
            symbol=symbol,
            signal=analysis.signal,
            price=price,
            confidence=analysis.confidence,
            reasoning=analysis.reasoning,
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self) -> tuple[SignalLogEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
