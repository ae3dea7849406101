"""WhatsApp → Dify → WhatsApp relay orchestration.

The webhook handler only authenticates, parses, and dispatches; it never waits
on the AI. Each qualifying message gets its own asyncio task that:

1. opens a streaming chat turn upstream,
2. races the next stream event against the idle window, all under the
   overall response deadline,
3. folds events into a ResponseAccumulator and sends every flush it decides
   as a reply to the original message.

Tasks share no mutable state. A failure inside one task (upstream error,
rejected send, deadline) is contained there and reported to that user only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable, Coroutine
from typing import TYPE_CHECKING, Any

from difygate.config import ConversationMode
from difygate.dify.models import StreamEvent, StreamEventKind
from difygate.models import AuditEvent, AuditEventType, RiskLevel
from difygate.relay.accumulator import FlushDecision, FlushPolicy, ResponseAccumulator
from difygate.webhook.auth import verify_signature
from difygate.webhook.models import (
    WebhookMessage,
    WebhookResponse,
    first_text_message,
    parse_messages,
)
from difygate.webhook.whatsapp import SendError

if TYPE_CHECKING:
    from difygate.audit.logger import AuditLogger
    from difygate.dify.client import ChatStream, ChatStreamClient
    from difygate.webhook.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)

UPSTREAM_ERROR_TEMPLATE = "Sorry, I encountered an error: {error}"


class RelayOrchestrator:
    """Owns the webhook → relay-task lifecycle for one process."""

    def __init__(
        self,
        app_secret: str,
        chat_client: ChatStreamClient,
        whatsapp: WhatsAppClient,
        policy: FlushPolicy | None = None,
        response_timeout: float = 120.0,
        conversation_mode: ConversationMode = ConversationMode.NONE,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._app_secret = app_secret.encode()
        self._chat = chat_client
        self._whatsapp = whatsapp
        self._policy = policy or FlushPolicy()
        self._response_timeout = response_timeout
        self._conversation_mode = conversation_mode
        self._audit = audit_logger
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_tasks(self) -> frozenset[asyncio.Task[None]]:
        return frozenset(self._tasks)

    # --- Inbound ---

    def handle_webhook(
        self,
        raw_body: bytes,
        signature: str | None,
        source_ip: str | None = None,
    ) -> WebhookResponse:
        """Authenticate and dispatch one webhook delivery.

        Returns immediately; AI processing continues in a background task.
        """
        if not verify_signature(raw_body, signature, self._app_secret):
            logger.warning("Webhook signature verification failed",
                           extra={"source_ip": source_ip})
            if self._audit:
                self._audit.log(AuditEvent(
                    event_type=AuditEventType.WEBHOOK_REJECTED,
                    source_ip=source_ip,
                    action="whatsapp_webhook",
                    result="failure",
                    risk_level=RiskLevel.HIGH,
                    details={"reason": "missing_signature" if not signature
                             else "invalid_signature"},
                ))
            return WebhookResponse(status_code=403, text="Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return WebhookResponse(status_code=400, text="Failed to parse request body")

        logger.debug("Incoming webhook message", extra={"payload": payload})

        message = first_text_message(parse_messages(payload))
        if message is not None:
            self.dispatch(message)
        return WebhookResponse(status_code=200)

    def dispatch(self, message: WebhookMessage) -> asyncio.Task[None]:
        """Start the read receipt and the relay task for ``message``."""
        self._spawn(self._mark_read(message), f"mark-read-{message.message_id}")
        return self._spawn(self.process_message(message), f"relay-{message.message_id}")

    # --- Relay task ---

    async def process_message(self, message: WebhookMessage) -> None:
        """Run one full chat turn for ``message`` under the response deadline."""
        user_id = message.from_user_id.removeprefix("+")
        conversation_id = self._conversation_id(user_id)
        accumulator = ResponseAccumulator(self._policy, clock=self._clock)
        stream = self._chat.open_stream(message.text, user_id, conversation_id)

        logger.info(
            "Sending request to Dify",
            extra={"user_id": user_id, "query": message.text,
                   "conversation_id": conversation_id},
        )

        try:
            async with asyncio.timeout(self._response_timeout):
                outcome = await self._pump(stream, accumulator, message)
        except TimeoutError:
            logger.warning(
                "Timed out while processing Dify response",
                extra={"message_id": message.message_id},
            )
            outcome = "timeout"
            await self._deliver(accumulator.expire(), accumulator, message)

        self._record_outcome(message, outcome, accumulator, stream)

    async def _pump(
        self,
        stream: ChatStream,
        accumulator: ResponseAccumulator,
        message: WebhookMessage,
    ) -> str:
        """Drive ``stream`` into ``accumulator`` until it terminates."""
        events = stream.events()
        idle_window = accumulator.policy.idle_window
        wait_timeout = idle_window if idle_window > 0 else None
        outcome = "completed"
        next_event: asyncio.Task[StreamEvent | None] | None = None

        try:
            while not accumulator.terminated:
                if next_event is None:
                    next_event = asyncio.create_task(_next_event(events))

                done, _ = await asyncio.wait({next_event}, timeout=wait_timeout)
                if not done:
                    await self._deliver(accumulator.tick(), accumulator, message)
                    continue

                event = next_event.result()
                next_event = None

                if event is None:
                    logger.info("Dify response stream completed")
                    if stream.error is not None:
                        outcome = "error"
                        decision = accumulator.fail(
                            UPSTREAM_ERROR_TEMPLATE.format(error=stream.error),
                        )
                    else:
                        decision = accumulator.close()
                    await self._deliver(decision, accumulator, message)
                    break

                logger.debug(
                    "Received Dify response chunk",
                    extra={"event": event.event, "answer": event.answer, "id": event.id},
                )
                if event.kind is StreamEventKind.ERROR:
                    outcome = "error"
                    logger.error("Error event from Dify",
                                 extra={"error": event.error_message})
                await self._deliver(accumulator.feed(event), accumulator, message)
        finally:
            if next_event is not None and not next_event.done():
                next_event.cancel()
                await asyncio.wait({next_event})
            await events.aclose()
        return outcome

    async def _deliver(
        self,
        decision: FlushDecision,
        accumulator: ResponseAccumulator,
        message: WebhookMessage,
    ) -> None:
        if not decision.should_flush:
            return
        try:
            await self._whatsapp.send_message(
                message.business_phone_id,
                message.from_user_id,
                decision.text,
                message.message_id,
            )
        except SendError as exc:
            logger.error(
                "Failed to send WhatsApp reply",
                extra={"message_id": message.message_id, "error": exc.detail,
                       "status_code": exc.status_code},
            )
        accumulator.commit()

    async def _mark_read(self, message: WebhookMessage) -> None:
        try:
            await self._whatsapp.mark_read(message.business_phone_id, message.message_id)
        except SendError as exc:
            logger.warning(
                "Failed to mark message as read",
                extra={"message_id": message.message_id, "error": exc.detail},
            )

    def _conversation_id(self, user_id: str) -> str:
        if self._conversation_mode is ConversationMode.PER_USER:
            return f"whatsapp_{user_id}"
        return ""

    def _record_outcome(
        self,
        message: WebhookMessage,
        outcome: str,
        accumulator: ResponseAccumulator,
        stream: ChatStream,
    ) -> None:
        logger.info(
            "Relay finished",
            extra={"message_id": message.message_id, "outcome": outcome,
                   "flushes": accumulator.flush_count},
        )
        if not self._audit:
            return
        event_type = {
            "completed": AuditEventType.RELAY_COMPLETED,
            "timeout": AuditEventType.RELAY_TIMEOUT,
        }.get(outcome, AuditEventType.RELAY_FAILED)
        details: dict[str, object] = {
            "message_id": message.message_id,
            "flushes": accumulator.flush_count,
            "last_flush_size": accumulator.last_flush_size,
        }
        if stream.error is not None:
            details["upstream_error"] = str(stream.error)
        self._audit.log(AuditEvent(
            event_type=event_type,
            user_id=message.from_user_id,
            action="relay",
            result="success" if outcome == "completed" else outcome,
            risk_level=RiskLevel.INFO if outcome == "completed" else RiskLevel.MEDIUM,
            details=details,
        ))

    # --- Task bookkeeping ---

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Relay task crashed", exc_info=exc,
                         extra={"task": task.get_name()})

    async def join(self) -> None:
        """Wait for every in-flight task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel and await all in-flight tasks (application shutdown)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def _next_event(events: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    try:
        return await anext(events)
    except StopAsyncIteration:
        return None
