"""Tests for the relay orchestrator."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from difygate.config import ConversationMode
from difygate.dify.client import ChatStreamClient, UpstreamStatusError
from difygate.dify.models import StreamEvent
from difygate.models import AuditEventType
from difygate.relay import TIMEOUT_NOTICE, FlushPolicy, RelayOrchestrator
from difygate.webhook.whatsapp import SendError
from tests.conftest import (
    APP_SECRET,
    StallingStream,
    make_event,
    make_message,
    make_whatsapp_payload,
    sign_body,
)


class FakeStream:
    """Scripted upstream turn. Floats in ``script`` are pauses in seconds."""

    def __init__(
        self,
        script: list[StreamEvent | float],
        error: Exception | None = None,
        stall: bool = False,
    ) -> None:
        self._script = script
        self.error = error
        self._stall = stall
        self.closed = False

    async def events(self) -> AsyncGenerator[StreamEvent, None]:
        try:
            for item in self._script:
                if isinstance(item, float):
                    await asyncio.sleep(item)
                else:
                    yield item
            if self._stall:
                await asyncio.Event().wait()
        finally:
            self.closed = True


class FakeChatClient:
    def __init__(self, stream: FakeStream) -> None:
        self.stream = stream
        self.calls: list[tuple[str, str, str]] = []

    def open_stream(self, query: str, user: str, conversation_id: str = "") -> FakeStream:
        self.calls.append((query, user, conversation_id))
        return self.stream


def _orchestrator(
    stream: FakeStream,
    whatsapp: AsyncMock,
    policy: FlushPolicy | None = None,
    **kwargs,  # noqa: ANN003
) -> tuple[RelayOrchestrator, FakeChatClient]:
    chat = FakeChatClient(stream)
    orch = RelayOrchestrator(
        app_secret=APP_SECRET,
        chat_client=chat,  # type: ignore[arg-type]
        whatsapp=whatsapp,
        policy=policy or FlushPolicy(min_send_interval=0.0, min_chunk_size=60, idle_window=15.0),
        **kwargs,
    )
    return orch, chat


def _sent_texts(whatsapp: AsyncMock) -> list[str]:
    return [c.args[2] for c in whatsapp.send_message.await_args_list]


def _answer(fragments: list[str]) -> list[StreamEvent | float]:
    return [
        make_event("message_start"),
        *(make_event("message", answer=f) for f in fragments),
        make_event("message_end"),
    ]


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_long_answer_sent_in_chunks(self, mock_whatsapp: AsyncMock) -> None:
        fragments = [chr(65 + i) * 10 for i in range(12)]
        orch, _ = _orchestrator(FakeStream(_answer(fragments)), mock_whatsapp)

        await orch.process_message(make_message())

        sent = _sent_texts(mock_whatsapp)
        assert len(sent) == 2
        assert "".join(sent) == "".join(fragments)
        call = mock_whatsapp.send_message.await_args_list[0]
        assert call.args == ("PID", "+1234567890", sent[0], "wamid.1")

    @pytest.mark.asyncio
    async def test_short_answer_sent_once_at_end(self, mock_whatsapp: AsyncMock) -> None:
        orch, _ = _orchestrator(FakeStream(_answer(["Hi ", "there"])), mock_whatsapp)
        await orch.process_message(make_message())
        assert _sent_texts(mock_whatsapp) == ["Hi there"]

    @pytest.mark.asyncio
    async def test_stream_end_without_message_end_flushes(self, mock_whatsapp: AsyncMock) -> None:
        script: list[StreamEvent | float] = [make_event("message", answer="tail")]
        orch, _ = _orchestrator(FakeStream(script), mock_whatsapp)
        await orch.process_message(make_message())
        assert _sent_texts(mock_whatsapp) == ["tail"]

    @pytest.mark.asyncio
    async def test_user_id_strips_plus(self, mock_whatsapp: AsyncMock) -> None:
        orch, chat = _orchestrator(FakeStream(_answer(["x"])), mock_whatsapp)
        await orch.process_message(make_message(text="what?"))
        assert chat.calls == [("what?", "1234567890", "")]

    @pytest.mark.asyncio
    async def test_per_user_conversation(self, mock_whatsapp: AsyncMock) -> None:
        orch, chat = _orchestrator(
            FakeStream(_answer(["x"])), mock_whatsapp,
            conversation_mode=ConversationMode.PER_USER,
        )
        await orch.process_message(make_message())
        assert chat.calls[0][2] == "whatsapp_1234567890"

    @pytest.mark.asyncio
    async def test_idle_window_flushes_ready_text(self, mock_whatsapp: AsyncMock) -> None:
        script: list[StreamEvent | float] = [
            make_event("message", answer="a" * 30),
            0.3,
            make_event("message_end"),
        ]
        policy = FlushPolicy(min_send_interval=100.0, min_chunk_size=10, idle_window=0.05)
        orch, _ = _orchestrator(FakeStream(script), mock_whatsapp, policy=policy)

        await orch.process_message(make_message())

        assert _sent_texts(mock_whatsapp) == ["a" * 30]

    @pytest.mark.asyncio
    async def test_stalled_stream_gets_single_timeout_notice(
        self, mock_whatsapp: AsyncMock,
    ) -> None:
        stream = FakeStream([make_event("message", answer="partial")], stall=True)
        orch, _ = _orchestrator(stream, mock_whatsapp, response_timeout=0.1)

        await orch.process_message(make_message())

        assert _sent_texts(mock_whatsapp) == [TIMEOUT_NOTICE]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_upstream_failure_reported_to_user(self, mock_whatsapp: AsyncMock) -> None:
        stream = FakeStream([], error=UpstreamStatusError(500, "boom"))
        orch, _ = _orchestrator(stream, mock_whatsapp)

        await orch.process_message(make_message())

        assert _sent_texts(mock_whatsapp) == [
            "Sorry, I encountered an error: Dify API error (status 500): boom",
        ]

    @pytest.mark.asyncio
    async def test_error_event_replaces_partial_answer(self, mock_whatsapp: AsyncMock) -> None:
        script: list[StreamEvent | float] = [
            make_event("message", answer="half an ans"),
            make_event("error", message="quota exceeded"),
            make_event("message", answer="never read"),
        ]
        orch, _ = _orchestrator(FakeStream(script), mock_whatsapp)

        await orch.process_message(make_message())

        assert _sent_texts(mock_whatsapp) == ["Error from AI: quota exceeded"]

    @pytest.mark.asyncio
    async def test_send_failure_does_not_stop_relay(
        self, mock_whatsapp: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        attempts: list[str] = []

        async def reject_first(phone_id: str, to: str, text: str, reply_to: str) -> None:
            attempts.append(text)
            if len(attempts) == 1:
                raise SendError("rejected", 400)

        mock_whatsapp.send_message.side_effect = reject_first
        fragments = [chr(65 + i) * 10 for i in range(18)]
        orch, _ = _orchestrator(
            FakeStream(_answer(fragments)), mock_whatsapp, audit_logger=mock_audit_logger,
        )

        await orch.process_message(make_message())

        sent = _sent_texts(mock_whatsapp)
        assert len(sent) == 3
        assert "".join(sent) == "".join(fragments)
        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.RELAY_COMPLETED
        assert event.details["flushes"] == 3

    @pytest.mark.asyncio
    async def test_outcome_audited(
        self, mock_whatsapp: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        orch, _ = _orchestrator(
            FakeStream(_answer(["ok"])), mock_whatsapp, audit_logger=mock_audit_logger,
        )
        await orch.process_message(make_message())

        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.RELAY_COMPLETED
        assert event.details["flushes"] == 1
        assert event.details["last_flush_size"] == 2

    @pytest.mark.asyncio
    async def test_timeout_audited(
        self, mock_whatsapp: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        orch, _ = _orchestrator(
            FakeStream([], stall=True), mock_whatsapp,
            response_timeout=0.05, audit_logger=mock_audit_logger,
        )
        await orch.process_message(make_message())

        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.RELAY_TIMEOUT


class TestHandleWebhook:
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_tasks(
        self, mock_whatsapp: AsyncMock, mock_audit_logger: MagicMock,
    ) -> None:
        orch, chat = _orchestrator(
            FakeStream(_answer(["x"])), mock_whatsapp, audit_logger=mock_audit_logger,
        )
        body = json.dumps(make_whatsapp_payload()).encode()

        result = orch.handle_webhook(body, "sha256=" + "0" * 64)

        assert result.status_code == 403
        assert not orch.active_tasks
        assert chat.calls == []
        event = mock_audit_logger.log.call_args[0][0]
        assert event.event_type == AuditEventType.WEBHOOK_REJECTED

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, mock_whatsapp: AsyncMock) -> None:
        orch, _ = _orchestrator(FakeStream([]), mock_whatsapp)
        result = orch.handle_webhook(b"{}", None)
        assert result.status_code == 403

    @pytest.mark.asyncio
    async def test_unparseable_body(self, mock_whatsapp: AsyncMock) -> None:
        orch, _ = _orchestrator(FakeStream([]), mock_whatsapp)
        body = b"{not json"
        result = orch.handle_webhook(body, sign_body(body))
        assert result.status_code == 400
        assert result.text == "Failed to parse request body"

    @pytest.mark.asyncio
    async def test_valid_delivery_dispatches_relay(self, mock_whatsapp: AsyncMock) -> None:
        orch, chat = _orchestrator(FakeStream(_answer(["reply"])), mock_whatsapp)
        body = json.dumps(make_whatsapp_payload(text="question")).encode()

        result = orch.handle_webhook(body, sign_body(body))

        assert result.status_code == 200
        assert len(orch.active_tasks) == 2
        await orch.join()
        assert not orch.active_tasks
        assert chat.calls[0][0] == "question"
        mock_whatsapp.mark_read.assert_awaited_once_with("PID", "wamid.1")
        assert _sent_texts(mock_whatsapp) == ["reply"]

    @pytest.mark.asyncio
    async def test_non_text_delivery_acknowledged_without_relay(
        self, mock_whatsapp: AsyncMock,
    ) -> None:
        orch, chat = _orchestrator(FakeStream([]), mock_whatsapp)
        body = json.dumps(make_whatsapp_payload(msg_type="image")).encode()

        result = orch.handle_webhook(body, sign_body(body))

        assert result.status_code == 200
        assert not orch.active_tasks
        assert chat.calls == []

    @pytest.mark.asyncio
    async def test_mark_read_failure_is_contained(self, mock_whatsapp: AsyncMock) -> None:
        mock_whatsapp.mark_read.side_effect = SendError("nope", 500)
        orch, _ = _orchestrator(FakeStream(_answer(["still answered"])), mock_whatsapp)
        body = json.dumps(make_whatsapp_payload()).encode()

        orch.handle_webhook(body, sign_body(body))
        await orch.join()

        assert _sent_texts(mock_whatsapp) == ["still answered"]


class TestShutdown:
    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight_relays(self, mock_whatsapp: AsyncMock) -> None:
        stream = FakeStream([], stall=True)
        orch, _ = _orchestrator(stream, mock_whatsapp)
        orch.dispatch(make_message())
        await asyncio.sleep(0.05)

        await orch.aclose()

        assert not orch.active_tasks
        assert stream.closed
        mock_whatsapp.send_message.assert_not_awaited()


class TestUpstreamConnection:
    @pytest.mark.asyncio
    async def test_deadline_closes_upstream_connection(self, mock_whatsapp: AsyncMock) -> None:
        body = StallingStream(b'data: {"event": "message", "answer": "partial"}\n\n')
        chat = ChatStreamClient(
            base_url="http://dify.test/v1",
            api_key="k",
            transport=httpx.MockTransport(lambda req: httpx.Response(
                200, headers={"content-type": "text/event-stream"}, stream=body,
            )),
        )
        orch = RelayOrchestrator(
            app_secret=APP_SECRET,
            chat_client=chat,
            whatsapp=mock_whatsapp,
            policy=FlushPolicy(min_send_interval=0.0, min_chunk_size=60, idle_window=15.0),
            response_timeout=0.1,
        )

        await orch.process_message(make_message())

        assert _sent_texts(mock_whatsapp) == [TIMEOUT_NOTICE]
        assert body.closed
