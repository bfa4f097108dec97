"""
Outbound chat notifications.

The engine only needs "send this text to that recipient". Delivery failures
are logged and never affect payment state: ``send_safely`` is what the
engine calls.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger("p2p_settlement.notifications")

TELEGRAM_API_URL = "https://api.telegram.org"


class Notifier(ABC):
    """Abstract base class for notification channels."""

    @abstractmethod
    async def send(self, recipient_id: str, text: str) -> None:
        ...

    async def send_safely(self, recipient_id: Optional[str], text: str) -> bool:
        """Send, logging instead of raising. Returns True if delivered."""
        if not recipient_id:
            return False
        try:
            await self.send(recipient_id, text)
            return True
        except Exception as e:
            logger.error("Failed to notify %s: %s", recipient_id, e)
            return False

    async def close(self) -> None:
        pass


class TelegramNotifier(Notifier):
    """Sends Markdown messages through the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=f"{TELEGRAM_API_URL}/bot{bot_token}", timeout=timeout
        )

    async def send(self, recipient_id: str, text: str) -> None:
        response = await self._client.post(
            "/sendMessage",
            json={"chat_id": recipient_id, "text": text, "parse_mode": "Markdown"},
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LoggingNotifier(Notifier):
    """Writes notifications to the log; used when no bot token is configured."""

    async def send(self, recipient_id: str, text: str) -> None:
        logger.info("NOTIFY %s | %s", recipient_id, text.replace("\n", " | "))
