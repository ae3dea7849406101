"""ASGI middleware for Bearer API-key authentication on /api/v1 routes."""

from __future__ import annotations

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from difygate.audit.logger import AuditLogger
from difygate.models import AuditEvent, AuditEventType, RiskLevel

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api/v1/"


class AuthMiddleware:
    """Requires ``Authorization: Bearer <api key>`` on protected paths.

    Webhook paths authenticate with their own signature and are exempt.
    """

    def __init__(
        self,
        app: ASGIApp,
        api_key: str,
        audit_logger: AuditLogger | None = None,
        public_paths: frozenset[str] = frozenset(),
    ) -> None:
        self.app = app
        self._api_key = api_key.encode()
        self.audit_logger = audit_logger
        self._public_paths = public_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path
        if not path.startswith(PROTECTED_PREFIX) or path in self._public_paths:
            await self.app(scope, receive, send)
            return

        if not self._api_key:
            logger.error("API key not configured in environment variables")
            response = JSONResponse(
                {"error": "API authentication not properly configured"}, status_code=500,
            )
            await response(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header:
            await self._reject(
                request, scope, receive, send,
                "missing_header", "Authorization header required",
            )
            return

        scheme, _, provided = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not provided or " " in provided:
            await self._reject(
                request, scope, receive, send,
                "invalid_format", "Invalid authorization format, expected 'Bearer API_KEY'",
            )
            return

        if not hmac.compare_digest(provided.encode(), self._api_key):
            await self._reject(
                request, scope, receive, send, "invalid_key", "Invalid API key",
            )
            return

        if self.audit_logger:
            self.audit_logger.log(AuditEvent(
                event_type=AuditEventType.AUTH_SUCCESS,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {path}",
                result="success",
                risk_level=RiskLevel.INFO,
            ))

        await self.app(scope, receive, send)

    async def _reject(
        self,
        request: Request,
        scope: Scope,
        receive: Receive,
        send: Send,
        reason: str,
        message: str,
    ) -> None:
        logger.warning("Rejected API request", extra={"reason": reason})
        if self.audit_logger:
            self.audit_logger.log(AuditEvent(
                event_type=AuditEventType.AUTH_FAILURE,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {request.url.path}",
                result="failure",
                risk_level=RiskLevel.HIGH,
                details={"reason": reason},
            ))
        response = JSONResponse({"error": message}, status_code=401)
        await response(scope, receive, send)
