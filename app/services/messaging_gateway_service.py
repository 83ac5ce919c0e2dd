"""
Messaging gateway client.
Sends WhatsApp text messages through an Evolution API compatible gateway.
"""

import logging
import aiohttp
from dataclasses import dataclass
from typing import Optional

from app.config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Outcome of a single gateway send."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class MessagingGatewayService:
    """Thin HTTP client for the messaging gateway."""

    def __init__(self):
        self.base_url = settings.messaging_api_url.rstrip("/")
        self.api_key = settings.messaging_api_key
        self.timeout = aiohttp.ClientTimeout(total=30)

    async def send_text(self, instance_name: str, phone: str, text: str) -> SendResult:
        """
        Send a text message.

        Args:
            instance_name: Gateway instance of the sending account
            phone: Recipient phone number (with or without leading plus)
            text: Message body

        Returns:
            SendResult: success flag, gateway message id or error text
        """
        if not self.base_url:
            return SendResult(success=False, error="Messaging gateway not configured")

        url = f"{self.base_url}/message/sendText/{instance_name}"
        body = {"number": phone.lstrip("+"), "text": text}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=body, headers={"apikey": self.api_key}) as response:
                    if response.status >= 400:
                        detail = await response.text()
                        logger.error(f"Gateway send to {phone} failed: {response.status} {detail[:200]}")
                        return SendResult(success=False, error=f"Gateway error {response.status}: {detail[:200]}")
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Gateway send to {phone} failed: {e}")
            return SendResult(success=False, error=str(e))

        message_id = ((data or {}).get("key") or {}).get("id")
        if not message_id and isinstance((data or {}).get("data"), dict):
            message_id = ((data["data"].get("key")) or {}).get("id")
        logger.info(f"Sent message to {phone} via {instance_name} ({message_id})")
        return SendResult(success=True, message_id=message_id)


# Global messaging gateway instance
messaging_gateway_service = MessagingGatewayService()
