"""SMTP mail delivery."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import TYPE_CHECKING

from difygate.mail.models import MailMessage

if TYPE_CHECKING:
    from difygate.config import SmtpSettings

logger = logging.getLogger(__name__)

_SMTP_TIMEOUT_SECONDS = 30.0


class MailError(Exception):
    """The message could not be built or delivered."""


class MailService:
    """Builds MIME messages and delivers them over SMTP with STARTTLS."""

    def __init__(self, settings: SmtpSettings) -> None:
        self._settings = settings

    def build(self, msg: MailMessage) -> EmailMessage:
        if not msg.to:
            raise MailError("no recipients specified")
        s = self._settings
        if not s.username or not s.password:
            raise MailError("SMTP credentials not configured")

        email = EmailMessage()
        email["From"] = formataddr((s.from_name, s.username)) if s.from_name else s.username
        email["To"] = ", ".join(msg.to)
        if msg.cc:
            email["Cc"] = ", ".join(msg.cc)
        email["Subject"] = msg.subject
        email.set_content(msg.body, subtype="html" if msg.is_html else "plain")

        for att in msg.attachments:
            maintype, _, subtype = att.mime_type.partition("/")
            if not (maintype and subtype):
                maintype, subtype = "application", "octet-stream"
            email.add_attachment(
                att.data,
                maintype=maintype,
                subtype=subtype,
                filename=att.filename,
            )
        return email

    def send(self, msg: MailMessage) -> None:
        """Deliver ``msg`` synchronously. Bcc recipients get the envelope only."""
        email = self.build(msg)
        recipients = [*msg.to, *msg.cc, *msg.bcc]
        s = self._settings
        try:
            with smtplib.SMTP(s.host, s.port, timeout=_SMTP_TIMEOUT_SECONDS) as smtp:
                smtp.starttls()
                smtp.login(s.username, s.password)
                smtp.send_message(email, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email", extra={"error": str(exc)})
            raise MailError(str(exc)) from exc
        logger.info("Email sent", extra={"recipients": len(recipients)})

    async def send_async(self, msg: MailMessage) -> None:
        await asyncio.to_thread(self.send, msg)
