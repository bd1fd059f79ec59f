"""Tests for dashboard_notifications.py: Telegram relay."""
from __future__ import annotations

import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

from dashboard_notifications import (
    TEST_MESSAGE,
    TelegramNotifier,
    _mask_token,
    _send_telegram,
    send_test_message,
)
from scan_engine.settings import NotifyConfig


def _ok_response(status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.__enter__ = MagicMock(return_value=resp)
    resp.__exit__ = MagicMock(return_value=False)
    return resp


def _http_error(code: int, description: str) -> urllib.error.HTTPError:
    body = io.BytesIO(json.dumps({"ok": False, "description": description}).encode())
    return urllib.error.HTTPError("url", code, "Bad Request", {}, body)


def _config(**kwargs) -> NotifyConfig:
    base = {"enabled": True, "bot_token": "123:abc", "chat_id": "42", "min_confidence": 75.0}
    base.update(kwargs)
    return NotifyConfig(**base)


# ---------------------------------------------------------------------------
# _send_telegram
# ---------------------------------------------------------------------------


class TestSendTelegram:
    @patch("urllib.request.urlopen")
    def test_success(self, mock_urlopen):
        mock_urlopen.return_value = _ok_response()
        assert _send_telegram("123:abc", "42", "hi") == (True, "ok")

        req = mock_urlopen.call_args[0][0]
        assert req.full_url == "https://api.telegram.org/bot123:abc/sendMessage"
        payload = json.loads(req.data)
        assert payload["chat_id"] == "42"
        assert payload["parse_mode"] == "Markdown"

    @patch("urllib.request.urlopen")
    def test_http_error_description(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(400, "Bad Request: chat not found")
        assert _send_telegram("123:abc", "42", "hi") == (False, "Bad Request: chat not found")

    @patch("urllib.request.urlopen")
    def test_network_error(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("offline")
        assert _send_telegram("123:abc", "42", "hi") == (False, "URLError")

    @patch("urllib.request.urlopen")
    def test_unexpected_status(self, mock_urlopen):
        mock_urlopen.return_value = _ok_response(status=202)
        assert _send_telegram("123:abc", "42", "hi") == (False, "HTTP 202")

    def test_mask_token(self):
        assert _mask_token("123456:secret") == "123456:***"
        assert _mask_token("") == "***"


# ---------------------------------------------------------------------------
# TelegramNotifier
# ---------------------------------------------------------------------------


class TestTelegramNotifier:
    @patch("dashboard_notifications._send_telegram", return_value=(True, "ok"))
    def test_send(self, mock_send):
        assert TelegramNotifier(_config()).send("msg") is True
        mock_send.assert_called_once_with("123:abc", "42", "msg")

    @patch("dashboard_notifications._send_telegram")
    def test_unconfigured_drops(self, mock_send):
        notifier = TelegramNotifier(_config(chat_id=""))
        assert notifier.is_configured is False
        assert notifier.send("msg") is False
        mock_send.assert_not_called()

    @patch("dashboard_notifications._send_telegram", return_value=(False, "Forbidden"))
    def test_failure_reported(self, _mock_send):
        assert TelegramNotifier(_config()).send("msg") is False


# ---------------------------------------------------------------------------
# send_test_message
# ---------------------------------------------------------------------------


class TestSendTestMessage:
    def test_requires_credentials(self):
        ok, status = send_test_message(_config(bot_token=""))
        assert ok is False
        assert "bot token" in status

    @patch("dashboard_notifications._send_telegram", return_value=(True, "ok"))
    def test_success(self, mock_send):
        ok, status = send_test_message(_config(enabled=False))
        assert ok is True
        assert "Test message sent" in status
        assert mock_send.call_args[0][2] == TEST_MESSAGE

    @patch("dashboard_notifications._send_telegram", return_value=(False, "Unauthorized"))
    def test_failure(self, _mock_send):
        assert send_test_message(_config()) == (False, "Telegram error: Unauthorized")
