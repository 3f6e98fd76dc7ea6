from __future__ import annotations

import re

import httpx
from loguru import logger

from src.config import get_settings
from src.notifications.errors import DeliveryError

# Telegram MarkdownV2 requires escaping these characters
_TELEGRAM_ESCAPE_CHARS = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")

TELEGRAM_API_BASE = "https://api.telegram.org"
SEND_MESSAGE_TIMEOUT = 10  # seconds


def escape_markdown_v2(text: str) -> str:
    """Escape special characters for Telegram MarkdownV2 format."""
    return _TELEGRAM_ESCAPE_CHARS.sub(r"\\\1", text)


class TelegramSender:
    """Send messages via Telegram Bot API."""

    def __init__(self):
        settings = get_settings()
        self.bot_token = settings.telegram_bot_token

    @classmethod
    def is_configured(cls) -> bool:
        """Check if the bot token is set."""
        settings = get_settings()
        return bool(settings.telegram_bot_token)

    async def send(self, chat_id: str, text: str, silent: bool = False) -> None:
        """Send a message to a subscriber's chat.

        Args:
            chat_id: Telegram chat id stored on the push subscription.
            text: Message text in MarkdownV2 format.
            silent: Deliver without sound.

        Raises:
            DeliveryError: The API rejected the message or was unreachable.
        """
        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "MarkdownV2",
            "disable_notification": silent,
        }

        try:
            async with httpx.AsyncClient(timeout=SEND_MESSAGE_TIMEOUT) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Telegram API error: {e.response.status_code} - {e.response.text}"
            )
            raise DeliveryError(str(e), status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Telegram request failed: {e}")
            raise DeliveryError(str(e)) from e

        logger.info(f"Telegram message sent to chat {chat_id}")
