"""Structured error taxonomy and retry decorator for the scan engine.

Provides:
  - A custom exception hierarchy so the orchestrator can tell collaborator
    failures (market data, inference, configuration) apart without
    resorting to bare ``Exception``.
  - A ``@retry()`` decorator with exponential backoff, jitter, exception-
    type filtering, and an on_retry callback.  The inference client uses
    it for rate-limit backoff across model variants.
"""
from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class ScanEngineError(Exception):
    """Base error for all scan-engine subsystems."""
    pass


class MarketDataError(ScanEngineError):
    """Exchange API returned an error, timed out, or sent a malformed payload."""

    def __init__(self, message: str, *, symbol: str = "", endpoint: str = ""):
        self.symbol = symbol
        self.endpoint = endpoint
        super().__init__(message)


class InferenceError(ScanEngineError):
    """The inference collaborator could not produce a trading signal."""

    def __init__(self, message: str, *, symbol: str = "", model: str = ""):
        self.symbol = symbol
        self.model = model
        super().__init__(message)


class RateLimitError(InferenceError):
    """Model endpoint answered HTTP 429 / RESOURCE_EXHAUSTED."""
    pass


class MalformedResponseError(InferenceError):
    """Model answered, but the structured output could not be parsed."""
    pass


class ConfigError(ScanEngineError):
    """Missing credentials or an invalid configuration value."""
    pass


# ---------------------------------------------------------------------------
# Retry decorator
# ---------------------------------------------------------------------------

def retry(
    attempts: int = 3,
    backoff: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter_pct: float = 0.10,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[..., Any] | None = None,
    sleep: Callable[[float], None] | None = None,
):
    """Decorator: retry a function with exponential backoff + jitter.

    Parameters
    ----------
    attempts : int
        Maximum number of tries (including the first).
    backoff : float
        Multiplier applied to the delay after each failure.
    initial_delay : float
        Sleep before the first retry (seconds).
    max_delay : float
        Upper cap on the sleep between retries (seconds).
    jitter_pct : float
        ±N % random jitter added to the delay (0.10 = ±10 %).
    retryable_exceptions : tuple
        Only retry if the raised exception is an instance of one of these.
    on_retry : callable, optional
        ``on_retry(attempt, exception)`` called before each retry sleep.
    sleep : callable, optional
        Sleep function (defaults to ``time.sleep``); tests pass a no-op.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            _sleep = sleep or time.sleep
            delay = initial_delay
            last_exc: Exception | None = None
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retryable_exceptions as exc:
                    last_exc = exc
                    if attempt >= attempts:
                        raise
                    if on_retry is not None:
                        try:
                            on_retry(attempt, exc)
                        except Exception:
                            logger.debug("on_retry callback failed", exc_info=True)
                    jitter = delay * jitter_pct * (2 * random.random() - 1)
                    sleep_time = min(delay + jitter, max_delay)
                    logger.debug(
                        "retry %d/%d for %s after %.1fs: %s",
                        attempt, attempts, getattr(fn, "__qualname__", fn), sleep_time, exc,
                    )
                    _sleep(max(sleep_time, 0))
                    delay = min(delay * backoff, max_delay)
            if last_exc:
                raise last_exc
        return wrapper
    return decorator
