"""Pydantic models for the Dify chat-messages API."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StreamEventKind(str, Enum):
    MESSAGE_START = "message_start"
    MESSAGE = "message"
    AGENT_MESSAGE = "agent_message"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_END = "message_end"
    ERROR = "error"
    OTHER = "other"


CONTENT_KINDS = frozenset({
    StreamEventKind.MESSAGE,
    StreamEventKind.AGENT_MESSAGE,
    StreamEventKind.MESSAGE_DELTA,
})


class StreamEvent(BaseModel):
    """One decoded ``data:`` payload from the upstream event stream."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    event: str = ""
    id: str | None = None
    answer: str | None = None
    error: str | None = None
    message: str | None = None  # Dify puts error text here on "error" events
    conversation_id: str | None = None
    message_id: str | None = None
    finish_reason: str | None = None
    status: int | str | None = None
    code: str | None = None

    @property
    def kind(self) -> StreamEventKind:
        try:
            return StreamEventKind(self.event)
        except ValueError:
            return StreamEventKind.OTHER

    @property
    def answer_fragment(self) -> str:
        return self.answer or ""

    @property
    def error_message(self) -> str:
        return self.error or self.message or ""


class ChatRequest(BaseModel):
    query: str
    user: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    conversation_id: str = ""
    response_mode: str = "streaming"  # "streaming" | "blocking"


class ChatMessageResponse(BaseModel):
    """Blocking-mode answer."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    message_id: str | None = None
    answer: str = ""
    conversation_id: str = ""
    created_at: int | None = None
