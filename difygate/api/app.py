"""FastAPI application: WhatsApp webhook, email endpoint, health check."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from difygate.api.auth_middleware import AuthMiddleware
from difygate.api.request_logging import RequestLoggingMiddleware
from difygate.audit.logger import AuditLogger
from difygate.config import Settings
from difygate.dify.client import ChatStreamClient
from difygate.log import configure_logging
from difygate.mail.models import Attachment, MailMessage, SendEmailRequest
from difygate.mail.service import MailError, MailService
from difygate.models import AuditEvent, AuditEventType, RiskLevel
from difygate.relay import FlushPolicy, RelayOrchestrator
from difygate.webhook.auth import verify_subscription
from difygate.webhook.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/v1/whatsapp/webhook"


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    settings = Settings.from_env()
    configure_logging(settings.debug)
    if not settings.api_key:
        logger.warning(
            "DIFYGATE_API_KEY environment variable not set - "
            "API endpoints will not be securely protected",
        )
    audit_logger = (
        AuditLogger.from_env(settings.audit_log_path) if settings.audit_log_path else None
    )
    return create_app(settings, audit_logger=audit_logger)


def build_orchestrator(
    settings: Settings,
    audit_logger: AuditLogger | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
    graph_transport: httpx.AsyncBaseTransport | None = None,
) -> RelayOrchestrator:
    chat_client = ChatStreamClient(
        base_url=settings.dify_base_url,
        api_key=settings.dify_api_key,
        client_id=settings.dify_client_id,
        transport=upstream_transport,
        debug=settings.debug,
    )
    whatsapp = WhatsAppClient(
        access_token=settings.graph_api_token,
        api_version=settings.graph_api_version,
        transport=graph_transport,
        debug=settings.debug,
    )
    relay = settings.relay
    return RelayOrchestrator(
        app_secret=settings.whatsapp_app_secret,
        chat_client=chat_client,
        whatsapp=whatsapp,
        policy=FlushPolicy(
            min_send_interval=relay.min_send_interval,
            min_chunk_size=relay.min_chunk_size,
            idle_window=relay.idle_window,
        ),
        response_timeout=relay.response_timeout,
        conversation_mode=relay.conversation_mode,
        audit_logger=audit_logger,
    )


def create_app(
    settings: Settings,
    audit_logger: AuditLogger | None = None,
    orchestrator: RelayOrchestrator | None = None,
    mail_service: MailService | None = None,
) -> FastAPI:
    """Create the gateway app. Every collaborator is built once, here."""
    relay = orchestrator or build_orchestrator(settings, audit_logger)
    mailer = mail_service or MailService(settings.smtp)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await relay.aclose()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.orchestrator = relay

    @app.get(WEBHOOK_PATH)
    async def whatsapp_verify(request: Request) -> Response:
        params = request.query_params
        challenge = verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
            settings.webhook_verify_token,
        )
        source_ip = request.client.host if request.client else None
        if challenge is None:
            logger.warning("Webhook verification failed")
            _audit(audit_logger, AuditEvent(
                event_type=AuditEventType.WEBHOOK_REJECTED,
                source_ip=source_ip,
                action="whatsapp_verify",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                details={"reason": "verify_token_mismatch"},
            ))
            return Response(status_code=403)
        logger.info("Webhook verified successfully")
        _audit(audit_logger, AuditEvent(
            event_type=AuditEventType.WEBHOOK_VERIFIED,
            source_ip=source_ip,
            action="whatsapp_verify",
            result="success",
            risk_level=RiskLevel.INFO,
        ))
        return PlainTextResponse(challenge)

    @app.post(WEBHOOK_PATH)
    async def whatsapp_webhook(request: Request) -> Response:
        body = await request.body()
        result = relay.handle_webhook(
            body,
            request.headers.get("x-hub-signature-256"),
            source_ip=request.client.host if request.client else None,
        )
        if result.status_code == 400:
            return JSONResponse({"error": result.text}, status_code=400)
        return Response(status_code=result.status_code)

    @app.get("/api/v1/health")
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "service": "DifyGate",
            "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
        }

    @app.post("/api/v1/emails/send")
    async def send_email(request: Request) -> JSONResponse:
        try:
            req = SendEmailRequest.model_validate_json(await request.body())
        except ValidationError as exc:
            return JSONResponse({"error": _describe(exc)}, status_code=400)

        attachments: list[Attachment] = []
        for att in req.attachments:
            try:
                data = att.decode()
            except ValueError as exc:
                return JSONResponse(
                    {"error": f"Invalid attachment data: {exc}"}, status_code=400,
                )
            attachments.append(Attachment(att.filename, data, att.mime_type))

        msg = MailMessage(
            to=req.to,
            cc=req.cc,
            bcc=req.bcc,
            subject=req.subject,
            body=req.body,
            is_html=req.is_html,
            attachments=attachments,
        )
        try:
            await mailer.send_async(msg)
        except MailError as exc:
            _audit_email(audit_logger, request, "failure", str(exc))
            return JSONResponse(
                {"error": f"Failed to send email: {exc}"}, status_code=500,
            )

        _audit_email(audit_logger, request, "success")
        return JSONResponse({"message": "Email sent successfully"})

    app.add_middleware(
        AuthMiddleware,
        api_key=settings.api_key,
        audit_logger=audit_logger,
        public_paths=frozenset({WEBHOOK_PATH}),
    )
    # Added last so it wraps auth and also logs rejected requests
    app.add_middleware(RequestLoggingMiddleware)

    return app


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def _audit(audit_logger: AuditLogger | None, event: AuditEvent) -> None:
    if audit_logger:
        audit_logger.log(event)


def _audit_email(
    audit_logger: AuditLogger | None,
    request: Request,
    result: str,
    error: str | None = None,
) -> None:
    _audit(audit_logger, AuditEvent(
        event_type=AuditEventType.EMAIL_SENT if result == "success"
        else AuditEventType.EMAIL_FAILED,
        source_ip=request.client.host if request.client else None,
        action="send_email",
        result=result,
        risk_level=RiskLevel.INFO if result == "success" else RiskLevel.MEDIUM,
        details={"error": error} if error else None,
    ))
