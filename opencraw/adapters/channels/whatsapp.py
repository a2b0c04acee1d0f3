"""WhatsApp Cloud API channel adapter (send-only)."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from opencraw.core.errors import ChannelError
from opencraw.core.models import InboundMessage, OutboundMessage

if TYPE_CHECKING:
    from opencraw.config.schema import WhatsAppConfig

GRAPH_API_BASE = "https://graph.facebook.com/v20.0"
HTTP_TIMEOUT_SECONDS = 60.0


class WhatsAppChannel:
    """
    Sends text messages through the Graph API. Inbound delivery would need a
    webhook receiver, which this adapter does not provide.
    """

    channel_id = "whatsapp"
    supports_reactions = False

    def __init__(self, config: WhatsAppConfig, client: httpx.AsyncClient | None = None) -> None:
        self._access_token = config.access_token.strip()
        self._phone_number_id = config.phone_number_id.strip()
        if not self._access_token:
            raise ChannelError("whatsapp access token is required")
        if not self._phone_number_id:
            raise ChannelError("whatsapp phone number id is required")
        self._client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_API_BASE}/{self._phone_number_id}/messages"

    async def start(self, sink: asyncio.Queue[InboundMessage]) -> None:
        logger.info("whatsapp: send-only channel ready")

    async def stop(self) -> None:
        await self._client.aclose()

    async def send(self, recipient_id: str, message: OutboundMessage) -> None:
        to = recipient_id.strip()
        if not to:
            raise ChannelError("recipient_id (E.164 phone number) is required")
        text = message.content.strip()
        if not text:
            raise ChannelError("message content is empty")
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            response = await self._client.post(
                self.messages_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"whatsapp send failed: {e}") from e
        if not response.is_success:
            raise ChannelError(
                f"whatsapp send failed: status={response.status_code} body={response.text}"
            )
