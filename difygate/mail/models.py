"""Request and message models for the email endpoint."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from pydantic import BaseModel, Field


class AttachmentRequest(BaseModel):
    filename: str
    data: str  # base64 encoded
    mime_type: str

    def decode(self) -> bytes:
        """Return the raw attachment bytes; raises ValueError on bad base64."""
        try:
            return base64.b64decode(self.data, validate=True)
        except binascii.Error as exc:
            raise ValueError(str(exc)) from exc


class SendEmailRequest(BaseModel):
    to: list[str] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str
    body: str
    is_html: bool = False
    attachments: list[AttachmentRequest] = Field(default_factory=list)


@dataclass(frozen=True)
class Attachment:
    filename: str
    data: bytes
    mime_type: str


@dataclass
class MailMessage:
    to: list[str]
    subject: str
    body: str
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    is_html: bool = False
    attachments: list[Attachment] = field(default_factory=list)
