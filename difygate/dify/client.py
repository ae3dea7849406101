"""Dify chat-messages client.

``open_stream`` returns a ChatStream whose ``events()`` async generator owns the
HTTP response: the request is sent when iteration starts and the connection is
closed when iteration ends, is cancelled, or the generator is closed. Failures
never raise out of the iterator; they end the sequence and are recorded on
``ChatStream.error`` for the consumer to inspect.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx
from pydantic import ValidationError

from difygate.dify.models import ChatMessageResponse, ChatRequest, StreamEvent
from difygate.dify.sse import iter_events

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """The upstream chat API could not produce an answer."""


class UpstreamStatusError(UpstreamError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Dify API error (status {status_code}): {body}")
        self.status_code = status_code
        self.body = body


class UpstreamTransportError(UpstreamError):
    """Connecting, sending, or reading the upstream response failed."""


class ChatStream:
    """A single streaming chat turn. Iterate ``events()`` at most once."""

    def __init__(self, client: ChatStreamClient, request: ChatRequest) -> None:
        self._client = client
        self._request = request
        self._started = False
        self.error: UpstreamError | None = None

    def _fail(self, error: UpstreamError) -> None:
        if self.error is None:
            self.error = error
        logger.error("Dify streaming request failed", extra={"error": str(error)})

    async def events(self) -> AsyncGenerator[StreamEvent, None]:
        if self._started:
            raise RuntimeError("ChatStream can only be iterated once")
        self._started = True

        url = self._client.chat_url
        body = self._request.model_dump()
        logger.info("Sending streaming request to Dify API", extra={"url": url})
        if self._client.debug:
            logger.debug("Dify streaming request", extra={"dify_request": body})

        try:
            async with httpx.AsyncClient(
                transport=self._client.transport, timeout=None,
            ) as http:
                async with http.stream(
                    "POST", url, json=body, headers=self._client.headers(),
                ) as resp:
                    if not resp.is_success:
                        error_body = (await resp.aread()).decode(errors="replace")
                        self._fail(UpstreamStatusError(resp.status_code, error_body))
                        return

                    content_type = resp.headers.get("content-type", "")
                    if content_type.startswith("application/json"):
                        # Upstream ignored response_mode and answered in one piece
                        answer = _parse_blocking(await resp.aread())
                        for event in _as_events(answer):
                            yield event
                        return

                    logger.info("Starting to process Dify SSE stream")
                    async for event in iter_events(
                        resp.aiter_lines(), debug=self._client.debug,
                    ):
                        yield event
                    logger.info("SSE stream ended")
        except httpx.HTTPError as exc:
            self._fail(UpstreamTransportError(f"failed to communicate with Dify API: {exc}"))
        except UpstreamError as exc:
            self._fail(exc)


class ChatStreamClient:
    """Client for ``POST {base_url}/chat-messages``. Safe to share across tasks."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client_id: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        debug: bool = False,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client_id = client_id
        self.transport = transport
        self.debug = debug

    @property
    def chat_url(self) -> str:
        return f"{self._base_url}/chat-messages"

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._client_id:
            headers["X-Client-Id"] = self._client_id
        return headers

    def open_stream(
        self,
        query: str,
        user: str,
        conversation_id: str = "",
        inputs: dict[str, Any] | None = None,
    ) -> ChatStream:
        request = ChatRequest(
            query=query,
            user=user,
            inputs=inputs or {},
            conversation_id=conversation_id,
            response_mode="streaming",
        )
        return ChatStream(self, request)

    async def chat_blocking(
        self,
        query: str,
        user: str,
        conversation_id: str = "",
        inputs: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ChatMessageResponse:
        """Send one query in blocking mode and return the complete answer."""
        request = ChatRequest(
            query=query,
            user=user,
            inputs=inputs or {},
            conversation_id=conversation_id,
            response_mode="blocking",
        )
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as http:
                resp = await http.post(
                    self.chat_url, json=request.model_dump(), headers=self.headers(),
                )
        except httpx.HTTPError as exc:
            logger.error("Failed to send request to Dify API", extra={"error": str(exc)})
            raise UpstreamTransportError(
                f"failed to communicate with Dify API: {exc}",
            ) from exc

        if resp.status_code != 200:
            logger.error(
                "Dify API returned error",
                extra={"status_code": resp.status_code, "response": resp.text},
            )
            raise UpstreamStatusError(resp.status_code, resp.text)
        return _parse_blocking(resp.content)


def _parse_blocking(raw: bytes) -> ChatMessageResponse:
    try:
        return ChatMessageResponse.model_validate_json(raw)
    except ValidationError as exc:
        raise UpstreamError(f"failed to parse API response: {exc}") from exc


def _as_events(answer: ChatMessageResponse) -> list[StreamEvent]:
    common = {
        "id": answer.id,
        "conversation_id": answer.conversation_id,
        "message_id": answer.message_id or answer.id,
    }
    return [
        StreamEvent(event="message", answer=answer.answer, **common),
        StreamEvent(event="message_end", **common),
    ]
