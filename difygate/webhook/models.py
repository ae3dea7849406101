"""Data models for the WhatsApp webhook relay."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    TEXT = "text"
    OTHER = "other"


@dataclass(frozen=True)
class WebhookMessage:
    """One inbound user message from a WhatsApp Business webhook."""

    business_phone_id: str  # phone_number_id the reply must be sent from
    from_user_id: str
    message_id: str
    text: str
    kind: MessageKind


@dataclass
class WebhookResponse:
    """What the webhook endpoint answers to the platform."""

    status_code: int
    text: str = ""


def parse_messages(payload: Any) -> list[WebhookMessage]:
    """Flatten ``entry[].changes[].value.messages[]`` into WebhookMessages.

    Status callbacks (delivered, read, ...) carry no ``messages`` and yield
    nothing. Unknown shapes are skipped rather than rejected.
    """
    messages: list[WebhookMessage] = []
    if not isinstance(payload, dict):
        return messages

    for entry in _dicts(payload.get("entry")):
        for change in _dicts(entry.get("changes")):
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
            phone_id = str(metadata.get("phone_number_id", ""))
            for msg in _dicts(value.get("messages")):
                is_text = msg.get("type") == "text"
                text = msg.get("text") if isinstance(msg.get("text"), dict) else {}
                messages.append(WebhookMessage(
                    business_phone_id=phone_id,
                    from_user_id=str(msg.get("from", "")),
                    message_id=str(msg.get("id", "")),
                    text=str(text.get("body", "")) if is_text else "",
                    kind=MessageKind.TEXT if is_text else MessageKind.OTHER,
                ))
    return messages


def first_text_message(messages: list[WebhookMessage]) -> WebhookMessage | None:
    return next((m for m in messages if m.kind is MessageKind.TEXT), None)


def _dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
