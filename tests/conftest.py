"""Shared test fixtures for difygate."""

from __future__ import annotations

import asyncio
import hashlib
import hmac as hmac_mod
import json
from collections.abc import AsyncIterator, Iterable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from difygate.audit.logger import AuditLogger
from difygate.config import Settings
from difygate.dify.models import StreamEvent
from difygate.webhook.models import MessageKind, WebhookMessage
from difygate.webhook.whatsapp import WhatsAppClient

APP_SECRET = "wa_secret"


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def mock_whatsapp() -> AsyncMock:
    return AsyncMock(spec=WhatsAppClient)


# --- Factory functions for test data ---


def sign_body(body: bytes, secret: str = APP_SECRET) -> str:
    sig = hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


def make_whatsapp_payload(
    text: str = "hello",
    phone: str = "+1234567890",
    message_id: str = "wamid.1",
    phone_number_id: str = "PID",
    msg_type: str = "text",
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "from": phone,
        "id": message_id,
        "timestamp": "1700000000",
        "type": msg_type,
    }
    if msg_type == "text":
        message["text"] = {"body": text}
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "BID",
                "changes": [
                    {
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "messages": [message],
                        },
                        "field": "messages",
                    }
                ],
            }
        ],
    }


def make_message(**kwargs: Any) -> WebhookMessage:
    """Factory for WebhookMessage with sensible defaults."""
    defaults: dict[str, Any] = {
        "business_phone_id": "PID",
        "from_user_id": "+1234567890",
        "message_id": "wamid.1",
        "text": "hello",
        "kind": MessageKind.TEXT,
    }
    defaults.update(kwargs)
    return WebhookMessage(**defaults)


def make_event(event: str, **kwargs: Any) -> StreamEvent:
    return StreamEvent(event=event, **kwargs)


def sse_body(events: Iterable[dict[str, Any]]) -> bytes:
    """Render events the way Dify streams them: ``data: {...}`` + blank line."""
    return b"".join(f"data: {json.dumps(e)}\n\n".encode() for e in events)


def make_settings(**kwargs: Any) -> Settings:
    defaults: dict[str, Any] = {
        "api_key": "test-api-key",
        "dify_base_url": "http://dify.test/v1",
        "dify_api_key": "dify-key",
        "webhook_verify_token": "wa_verify",
        "whatsapp_app_secret": APP_SECRET,
        "graph_api_token": "graph-token",
    }
    defaults.update(kwargs)
    return Settings(**defaults)


class StallingStream(httpx.AsyncByteStream):
    """Response body that sends ``chunks`` and then never finishes."""

    def __init__(self, *chunks: bytes) -> None:
        self._chunks = chunks
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True
