"""Telegram relay for dashboard trading signals.

The scan engine formats the message (``scan_engine.messages``) and decides
whether a signal is worth relaying; this module only delivers text to a
Telegram chat via the Bot API.  Configuration comes from
:class:`scan_engine.settings.NotifyConfig` (env vars or the settings
panel):

    DASHBOARD_NOTIFY_ENABLED=1
    DASHBOARD_TELEGRAM_BOT_TOKEN=123456:ABC-DEF...
    DASHBOARD_TELEGRAM_CHAT_ID=-1001234567890

Delivery failures are logged and reported as ``False``; nothing here
raises into the scan loop.
"""
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request

from scan_engine.settings import NotifyConfig

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
_TIMEOUT_S = 10

TEST_MESSAGE = (
    "🔔 *CONNECTION TEST*\n\n"
    "The crypto signal dashboard is connected to this chat. "
    "Directional signals will be relayed here. 🚀"
)


def _mask_token(token: str) -> str:
    """Keep the bot id, hide the secret part (``123456:***``)."""
    bot_id, _, _ = token.partition(":")
    return f"{bot_id}:***" if bot_id else "***"


def _send_telegram(token: str, chat_id: str, text: str) -> tuple[bool, str]:
    """Send a Telegram message via Bot API.

    Returns ``(ok, detail)`` where *detail* is Telegram's error
    description on failure.
    """
    url = f"{TELEGRAM_API}/bot{token}/sendMessage"
    payload = json.dumps({
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "Markdown",
        "disable_web_page_preview": True,
    }).encode()

    req = urllib.request.Request(url, data=payload, method="POST")
    req.add_header("Content-Type", "application/json")

    try:
        with urllib.request.urlopen(req, timeout=_TIMEOUT_S) as resp:
            if resp.status == 200:
                logger.info("Telegram notification sent to %s", chat_id)
                return True, "ok"
            logger.warning("Telegram HTTP %d", resp.status)
            return False, f"HTTP {resp.status}"
    except urllib.error.HTTPError as exc:
        detail = f"HTTP {exc.code}"
        try:
            body = json.loads(exc.read()[:2000] or b"{}")
            detail = body.get("description") or detail
        except (ValueError, AttributeError):
            pass
        logger.warning("Telegram HTTP error %d (bot %s): %s", exc.code, _mask_token(token), detail)
        return False, detail
    except Exception as exc:
        logger.warning("Telegram send failed (bot %s): %s", _mask_token(token), type(exc).__name__)
        return False, type(exc).__name__


class TelegramNotifier:
    """Notifier collaborator: ``send(message) -> bool``."""

    def __init__(self, config: NotifyConfig) -> None:
        self._config = config

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    def send(self, message: str) -> bool:
        if not self.is_configured:
            logger.debug("Telegram not configured, dropping message")
            return False
        ok, _ = _send_telegram(self._config.bot_token, self._config.chat_id, message)
        return ok


def send_test_message(config: NotifyConfig) -> tuple[bool, str]:
    """Settings-panel connection test.

    Returns ``(ok, status)`` with a human-readable status line.
    """
    if not config.is_configured:
        return False, "Enter both the bot token and the chat id first."
    ok, detail = _send_telegram(config.bot_token, config.chat_id, TEST_MESSAGE)
    if ok:
        return True, "Test message sent. Check your Telegram chat."
    return False, f"Telegram error: {detail}"
