"""Per-symbol record of the last candle submitted for inference."""

from __future__ import annotations


class StalenessTracker:
    """Answers "has this symbol's latest candle already been analyzed?".

    Only inequality is checked: a candle timestamp that moves backwards
    (clock skew, re-fetch of an older bar) still counts as stale, so the
    symbol is re-analyzed.

    Not thread-safe on its own; the orchestrator mutates it under its lock.
    """

    def __init__(self) -> None:
        self._last: dict[str, int] = {}

    def is_stale(self, symbol: str, latest_candle_ts: int) -> bool:
        last = self._last.get(symbol)
        return last is None or last != latest_candle_ts

    def mark_analyzed(self, symbol: str, ts: int) -> None:
        self._last[symbol] = ts

    def last_analyzed(self, symbol: str) -> int | None:
        return self._last.get(symbol)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._last

    def __len__(self) -> int:
        return len(self._last)
