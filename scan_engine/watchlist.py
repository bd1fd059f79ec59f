"""Watched symbols: an ordered, duplicate-free, never-empty list.

Symbols are base assets (``BTC``), upper-cased, with any quote-currency
suffix stripped (``btcusdt`` / ``BTC/USDT`` → ``BTC``).  Persistence lives
in :mod:`scan_engine.settings`; this class only enforces the invariants.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

DEFAULT_SYMBOL = "BTC"
QUOTE_SUFFIXES: tuple[str, ...] = ("USDT", "USDC", "BUSD", "USD")

_SYMBOL_RE = re.compile(r"^[A-Z0-9]{1,15}$")


def normalize_symbol(raw: str) -> str:
    """Upper-case *raw* and strip a trailing quote currency.

    Raises ``ValueError`` for empty or non-alphanumeric input.
    """
    sym = (raw or "").strip().upper().replace("-", "/")
    if "/" in sym:
        sym = sym.split("/", 1)[0]
    for suffix in QUOTE_SUFFIXES:
        if sym.endswith(suffix) and len(sym) > len(suffix):
            sym = sym[: -len(suffix)]
            break
    if not _SYMBOL_RE.match(sym):
        raise ValueError(f"Invalid symbol: {raw!r}")
    return sym


class Watchlist:
    """Ordered set of symbols that is never empty.

    Removing the last entry re-seeds :data:`DEFAULT_SYMBOL`.
    """

    def __init__(self, symbols: Iterable[str] = (), default_symbol: str = DEFAULT_SYMBOL) -> None:
        self.default_symbol = normalize_symbol(default_symbol)
        self._symbols: list[str] = []
        for raw in symbols:
            try:
                sym = normalize_symbol(raw)
            except ValueError:
                logger.warning("Dropping invalid watchlist entry %r", raw)
                continue
            if sym not in self._symbols:
                self._symbols.append(sym)
        if not self._symbols:
            self._symbols.append(self.default_symbol)

    def add(self, raw: str) -> tuple[str, bool]:
        """Append a symbol; returns ``(symbol, added)`` (no duplicates)."""
        sym = normalize_symbol(raw)
        if sym in self._symbols:
            logger.info("%s already on watchlist", sym)
            return sym, False
        self._symbols.append(sym)
        logger.info("Added %s to watchlist (%d total)", sym, len(self._symbols))
        return sym, True

    def remove(self, raw: str) -> bool:
        """Remove a symbol; re-seed the default if the list became empty."""
        sym = normalize_symbol(raw)
        if sym not in self._symbols:
            return False
        self._symbols.remove(sym)
        logger.info("Removed %s from watchlist", sym)
        if not self._symbols:
            self._symbols.append(self.default_symbol)
            logger.info("Watchlist empty, re-seeded %s", self.default_symbol)
        return True

    def successor(self, sym: str, previous: list[str]) -> str:
        """Symbol taking over from *sym*, given the list before it was removed.

        Prefers the entry that followed *sym*, then the one before it,
        then the first entry.
        """
        if sym in previous:
            idx = previous.index(sym)
            for candidate in previous[idx + 1:] + previous[:idx][::-1]:
                if candidate in self._symbols:
                    return candidate
        return self._symbols[0]

    @property
    def first(self) -> str:
        return self._symbols[0]

    def to_list(self) -> list[str]:
        return list(self._symbols)

    def __contains__(self, raw: object) -> bool:
        if not isinstance(raw, str):
            return False
        try:
            return normalize_symbol(raw) in self._symbols
        except ValueError:
            return False

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._symbols))

    def __len__(self) -> int:
        return len(self._symbols)
