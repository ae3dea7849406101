"""WhatsApp Business Graph API client: reply messages and read receipts.

Each call is a single attempt; failures raise SendError and the caller decides
whether to log or surface them.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"
MAX_MESSAGE_LENGTH = 4000
_TRUNCATION_SUFFIX = "..."
_SEND_TIMEOUT_SECONDS = 10.0


class SendError(Exception):
    """The Graph API rejected or never received an outbound call."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def truncate_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Cap ``text`` at ``limit`` characters, marking the cut with '...'."""
    if len(text) <= limit:
        return text
    return text[: limit - len(_TRUNCATION_SUFFIX)] + _TRUNCATION_SUFFIX


class WhatsAppClient:
    """Sends messages through the WhatsApp Business Graph API.

    Stateless between calls, so concurrent relay tasks share one instance.
    """

    def __init__(
        self,
        access_token: str,
        api_version: str = "v22.0",
        base_url: str = GRAPH_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
        debug: bool = False,
    ) -> None:
        self._access_token = access_token
        self._api_version = api_version
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._debug = debug

    def messages_url(self, phone_number_id: str) -> str:
        return f"{self._base_url}/{self._api_version}/{phone_number_id}/messages"

    async def send_message(
        self, phone_number_id: str, to: str, text: str, reply_to: str,
    ) -> None:
        """Send ``text`` to ``to`` as a reply to message ``reply_to``.

        Empty text is a no-op. Text over 4000 characters is truncated.
        """
        if not text:
            logger.warning("Skipping empty WhatsApp message", extra={"to": to})
            return

        body = truncate_message(text)
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": to,
            "text": {"body": body},
            "context": {"message_id": reply_to},
        }
        if self._debug:
            logger.debug(
                "Sending WhatsApp message",
                extra={"to": to, "length": len(body), "payload": payload},
            )
        await self._post(phone_number_id, payload)
        logger.info("Message sent", extra={"to": to, "length": len(body)})

    async def mark_read(self, phone_number_id: str, message_id: str) -> None:
        """Flag an inbound message as read (blue ticks)."""
        payload = {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        }
        await self._post(phone_number_id, payload)

    async def _post(self, phone_number_id: str, payload: dict[str, Any]) -> httpx.Response:
        if not self._access_token:
            raise SendError("Graph API token is not configured")

        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=_SEND_TIMEOUT_SECONDS,
            ) as client:
                resp = await client.post(
                    self.messages_url(phone_number_id), json=payload, headers=headers,
                )
        except httpx.HTTPError as exc:
            raise SendError(f"Graph API unreachable: {exc}") from exc

        if resp.status_code != 200:
            raise SendError(
                f"Graph API error (status {resp.status_code}): {resp.text}",
                status_code=resp.status_code,
            )
        if self._debug:
            logger.debug("Graph API response", extra={"response": resp.text})
        return resp
