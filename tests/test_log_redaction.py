"""Tests for scan_engine/log_redaction.py: secrets never reach log output."""
from __future__ import annotations

import logging

from scan_engine.log_redaction import (
    LogRedactionFilter,
    apply_log_redaction,
    redact_secrets,
)

_BOT_TOKEN = "123456789:AAHk9x_Zq-abcdefghijklmnopqrstuvwxyz0"
_GOOGLE_KEY = "AIza" + "A1b2C3d4E5f6G7h8I9j0K1l2M3n4O5p6Q7r"


class TestRedactSecrets:
    def test_telegram_url(self):
        msg = f"POST https://api.telegram.org/bot{_BOT_TOKEN}/sendMessage failed"
        out = redact_secrets(msg)
        assert _BOT_TOKEN not in out
        assert "api.telegram.org/bot***REDACTED***/sendMessage" in out

    def test_bare_bot_token(self):
        assert _BOT_TOKEN not in redact_secrets(f"token is {_BOT_TOKEN}")

    def test_google_key(self):
        out = redact_secrets(f"key {_GOOGLE_KEY} rejected")
        assert _GOOGLE_KEY not in out

    def test_key_value(self):
        out = redact_secrets("x-goog-api-key: supersecretvalue")
        assert "supersecretvalue" not in out

    def test_bearer_header(self):
        out = redact_secrets("Authorization: Bearer abc.def.ghi")
        assert "abc.def.ghi" not in out

    def test_plain_text_untouched(self):
        msg = "Sweep finished in 3.2s: 6 processed, 0 failed"
        assert redact_secrets(msg) == msg

    def test_empty(self):
        assert redact_secrets("") == ""


class TestLogRedactionFilter:
    def _record(self, msg, args=()):
        return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)

    def test_redacts_msg_and_tuple_args(self):
        rec = self._record("send via %s", (f"https://api.telegram.org/bot{_BOT_TOKEN}/x",))
        assert LogRedactionFilter().filter(rec) is True
        assert _BOT_TOKEN not in rec.getMessage()

    def test_non_string_args_kept(self):
        rec = self._record("attempt %d of %d", (1, 3))
        LogRedactionFilter().filter(rec)
        assert rec.getMessage() == "attempt 1 of 3"

    def test_apply_is_idempotent(self):
        logger = logging.getLogger("test_log_redaction.idempotent")
        handler = logging.StreamHandler()
        logger.addHandler(handler)
        try:
            apply_log_redaction(logger)
            apply_log_redaction(logger)
            assert sum(isinstance(f, LogRedactionFilter) for f in handler.filters) == 1
        finally:
            logger.removeHandler(handler)
