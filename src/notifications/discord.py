from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from src.notifications.errors import DeliveryError

SEND_MESSAGE_TIMEOUT = 10  # seconds


class DiscordSender:
    """Send messages via Discord Webhook."""

    @classmethod
    def is_configured(cls) -> bool:
        # The webhook URL lives on each subscription; nothing global to set.
        return True

    async def send(
        self,
        webhook_url: str,
        text: str,
        embeds: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Send a message to a subscriber's Discord webhook.

        Args:
            webhook_url: Webhook URL stored on the push subscription.
            text: Plain text content.
            embeds: Optional list of Discord embed objects.

        Raises:
            DeliveryError: Nothing to send, or the webhook call failed.
        """
        payload: Dict[str, Any] = {}
        if text:
            payload["content"] = text
        if embeds:
            payload["embeds"] = embeds

        if not payload:
            logger.warning("Discord send called with no content")
            raise DeliveryError("Empty Discord message")

        try:
            async with httpx.AsyncClient(timeout=SEND_MESSAGE_TIMEOUT) as client:
                response = await client.post(webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Discord webhook error: {e.response.status_code} - {e.response.text}"
            )
            raise DeliveryError(str(e), status_code=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Discord webhook request failed: {e}")
            raise DeliveryError(str(e)) from e

        logger.info("Discord webhook message sent")
