"""ASGI middleware that logs one line per HTTP request."""

from __future__ import annotations

import logging
import time

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("difygate.access")


class RequestLoggingMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            client = scope.get("client")
            logger.info("API request", extra={
                "status": status_code,
                "method": scope["method"],
                "path": scope["path"],
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "client_ip": client[0] if client else None,
                "user_agent": Headers(scope=scope).get("user-agent", ""),
            })
