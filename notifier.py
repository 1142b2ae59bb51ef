"""
Sync status notifications via the Telegram Bot API.

Senders raise NotificationError on failure; callers that treat notifications
as best-effort catch and log it.
"""
import html
import logging
from datetime import datetime
from typing import Optional

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class NotificationError(RuntimeError):
    pass


def _short(sync_id: str) -> str:
    return html.escape(str(sync_id)[:8])


def _now() -> str:
    return datetime.now().strftime("%H:%M:%S")


class TelegramNotifier:
    def __init__(self, bot_token: str, chat_id: str, timeout: float = 10,
                 session: Optional[requests.Session] = None, api_base: str = TELEGRAM_API):
        if not bot_token or not chat_id:
            raise ValueError("Telegram bot token and chat id are required")
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.api_base = api_base.rstrip("/")

    def send(self, text: str):
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        try:
            resp = self.session.post(
                url,
                json={"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NotificationError(f"Telegram send failed: {exc}") from exc
        if resp.status_code >= 400:
            raise NotificationError(f"Telegram API error {resp.status_code}: {resp.text[:200]}")

    def notify_sync_start(self, count: int, sync_id: str):
        self.send(
            "🔄 <b>Sync Started</b>\n"
            f"ID: <code>{_short(sync_id)}</code>\n"
            f"Items: {count}\n"
            f"Time: {_now()}"
        )

    def notify_sync_success(self, sync_id: str, count: int):
        self.send(
            "✅ <b>Sync Success</b>\n"
            f"ID: <code>{_short(sync_id)}</code>\n"
            f"Items: {count}\n"
            f"Time: {_now()}"
        )

    def notify_sync_fail(self, sync_id: str, error: str):
        self.send(
            "❌ <b>Sync Failed</b>\n"
            f"ID: <code>{_short(sync_id)}</code>\n"
            f"Error: <code>{html.escape(str(error)[:500])}</code>\n"
            f"Time: {_now()}"
        )


class NullNotifier:
    """Used when no bot is configured; logs instead of sending."""

    def notify_sync_start(self, count: int, sync_id: str):
        logger.info("Sync %s started (%d items)", sync_id, count)

    def notify_sync_success(self, sync_id: str, count: int):
        logger.info("Sync %s succeeded (%d items)", sync_id, count)

    def notify_sync_fail(self, sync_id: str, error: str):
        logger.info("Sync %s failed: %s", sync_id, error)


def make_notifier(config):
    if config.telegram_token and config.telegram_chat_id:
        return TelegramNotifier(config.telegram_token, config.telegram_chat_id)
    logger.warning("Telegram alert bot not configured; sync notifications will only be logged")
    return NullNotifier()
