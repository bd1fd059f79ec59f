"""Binance spot market data for the signal dashboard.

Provides the two calls the scan engine needs:

1. **Candles** : ``/api/v3/klines`` for ``{SYMBOL}{QUOTE}`` (oldest first)
2. **24h ticker** : ``/api/v3/ticker/24hr`` (last price + % change)

Public endpoints, no API key.  Every failure (network, HTTP status,
malformed JSON) is raised as ``MarketDataError`` so the orchestrator can
fail just that symbol's slot.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from scan_engine.common_types import Candle, Ticker
from scan_engine.error_taxonomy import MarketDataError

log = logging.getLogger(__name__)

BINANCE_BASE = "https://api.binance.com"
DEFAULT_QUOTE = "USDT"
DEFAULT_LIMIT = 300
_TIMEOUT_S = 15.0

_APIKEY_RE = re.compile(r"(apikey|api_key|token|key|signature)=[^&\s]+", re.IGNORECASE)


def _sanitize_exc(exc: Exception) -> str:
    return _APIKEY_RE.sub(r"\1=***", str(exc))


def parse_kline(row: Any) -> Candle:
    """Convert one Binance kline array into a :class:`Candle`.

    Binance rows look like ``[openTime, "open", "high", "low", "close",
    "volume", closeTime, ...]`` with prices as strings.
    """
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise ValueError(f"unexpected kline row: {row!r}")
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class BinanceMarketData:
    """Thin ``httpx`` client for Binance klines + 24h ticker.

    Parameters
    ----------
    client : httpx.Client, optional
        Injected client (tests pass a ``MagicMock``).  When omitted a
        client with a 15 s timeout is created and owned by this instance.
    base_url : str
        REST base URL (``https://api.binance.com``).
    quote : str
        Quote currency appended to every base symbol.
    limit : int
        Number of candles requested per call.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        base_url: str = BINANCE_BASE,
        quote: str = DEFAULT_QUOTE,
        limit: int = DEFAULT_LIMIT,
        timeout: float = _TIMEOUT_S,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self.base_url = base_url.rstrip("/")
        self.quote = quote.upper()
        self.limit = limit

    def pair(self, symbol: str) -> str:
        return f"{symbol.upper()}{self.quote}"

    def _get(self, path: str, params: dict[str, Any], symbol: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = self._client.get(url, params=params)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as exc:
            log.warning("Binance %s HTTP %d for %s", path, exc.response.status_code, symbol)
            raise MarketDataError(
                f"Binance HTTP {exc.response.status_code}", symbol=symbol, endpoint=path,
            ) from exc
        except (httpx.HTTPError, OSError, ValueError) as exc:
            _safe = _sanitize_exc(exc)
            log.warning("Binance %s failed for %s: %s", path, symbol, _safe)
            raise MarketDataError(
                f"Binance request failed: {_safe}", symbol=symbol, endpoint=path,
            ) from exc

    def fetch_candles(self, symbol: str, interval_label: str = "15m") -> list[Candle]:
        """OHLCV candles for *symbol*, most recent last."""
        data = self._get(
            "/api/v3/klines",
            {"symbol": self.pair(symbol), "interval": interval_label, "limit": self.limit},
            symbol,
        )
        if not isinstance(data, list):
            raise MarketDataError(
                f"Unexpected klines payload for {symbol}", symbol=symbol, endpoint="/api/v3/klines",
            )
        try:
            candles = [parse_kline(row) for row in data]
        except (TypeError, ValueError) as exc:
            raise MarketDataError(
                f"Malformed kline for {symbol}: {exc}", symbol=symbol, endpoint="/api/v3/klines",
            ) from exc
        candles.sort(key=lambda c: c.open_time)
        return candles

    def fetch_ticker(self, symbol: str) -> Ticker:
        """Last price and 24h % change for *symbol*."""
        data = self._get("/api/v3/ticker/24hr", {"symbol": self.pair(symbol)}, symbol)
        try:
            return Ticker(
                last_price=float(data["lastPrice"]),
                change_pct_24h=float(data["priceChangePercent"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MarketDataError(
                f"Malformed ticker for {symbol}", symbol=symbol, endpoint="/api/v3/ticker/24hr",
            ) from exc

    def close(self) -> None:
        """Release the HTTP connection pool if this instance created it."""
        if self._owns_client:
            self._client.close()
