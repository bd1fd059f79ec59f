"""Secret redaction for log output.

Provides:
  - ``redact_secrets(msg)``         : strip sensitive patterns from a string
  - ``LogRedactionFilter``          : ``logging.Filter`` that auto-redacts
  - ``apply_log_redaction(logger)`` : attach the filter to all handlers
  - ``apply_global_log_redaction()`` : attach the filter to the root logger

The dashboard handles a Telegram bot token and a Gemini API key; both can
surface in exception text (the bot token is part of the Bot API URL).

Usage::

    from scan_engine.log_redaction import apply_global_log_redaction
    apply_global_log_redaction()  # call once at startup
"""
from __future__ import annotations

import logging
import re

# ---------------------------------------------------------------------------
# Sensitive patterns (name, compiled regex)
# ---------------------------------------------------------------------------
_SENSITIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # Telegram Bot API URL: https://api.telegram.org/bot<token>/sendMessage
    ("telegram_url", re.compile(r"(?<=api\.telegram\.org/bot)[^/\s]+")),
    # Bare Telegram bot token (numeric id ':' 35-char secret)
    ("telegram_token", re.compile(r"\b\d{6,12}:[A-Za-z0-9_-]{30,}\b")),
    # Google API key (Gemini)
    ("google_key", re.compile(r"AIza[0-9A-Za-z_-]{35}")),
    # API keys / tokens / secrets (key=value style)
    (
        "api_token",
        re.compile(
            r"(?:api[_-]?key|token|secret|password|x-goog-api-key)\s*[:=]\s*[\"']?([^\s'\"]+)[\"']?",
            re.IGNORECASE,
        ),
    ),
    # Authorization / Bearer headers
    (
        "auth_header",
        re.compile(r"Authorization\s*[:=]\s*(?:Bearer\s+)?\S+|Bearer\s+\S+", re.IGNORECASE),
    ),
]

_REPLACEMENT = "***REDACTED***"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def redact_secrets(msg: str, replacement: str = _REPLACEMENT) -> str:
    """Return *msg* with all recognised secret patterns replaced."""
    if not msg:
        return msg
    result = msg
    for _name, pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


class LogRedactionFilter(logging.Filter):
    """Logging filter that automatically redacts sensitive data.

    Attach to a handler (not a logger) for best results::

        handler.addFilter(LogRedactionFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if record.msg and isinstance(record.msg, str):
            record.msg = redact_secrets(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: redact_secrets(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_secrets(v) if isinstance(v, str) else v
                    for v in record.args
                )
        return True


def apply_log_redaction(logger: logging.Logger) -> None:
    """Attach :class:`LogRedactionFilter` to every handler of *logger*."""
    filt = LogRedactionFilter()
    for handler in logger.handlers:
        if not any(isinstance(f, LogRedactionFilter) for f in handler.filters):
            handler.addFilter(filt)


def apply_global_log_redaction() -> None:
    """Attach :class:`LogRedactionFilter` to the **root** logger's handlers."""
    apply_log_redaction(logging.getLogger())
