"""Server-sent event decoding for the upstream chat stream.

Dify writes one JSON object per ``data:`` line followed by a blank line, but
standard SSE framing allows a payload to span several ``data:`` lines that are
joined with newlines until the terminating blank line. The decoder accepts
both: a ``data:`` line that parses on its own is emitted at once, anything
else accumulates until it parses, a blank line arrives, or a self-contained
line supersedes it. Undecodable payloads are logged and dropped.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from difygate.dify.models import StreamEvent

logger = logging.getLogger(__name__)


class SSEDecoder:
    """Incremental line-to-event decoder. One instance per stream."""

    def __init__(self, debug: bool = False) -> None:
        self._pending: list[str] = []
        self._debug = debug

    def decode_line(self, line: str) -> list[StreamEvent]:
        """Feed one line (without its newline); return the events it completes."""
        line = line.rstrip("\r")
        if self._debug:
            logger.debug("Received SSE line", extra={"sse_line": line})

        if not line.strip():
            return self._drain()
        if not line.startswith("data:"):
            # event:, id:, retry: and ":" comments carry nothing we use
            return []

        data = line[len("data:"):].strip()
        if not data:
            return []

        standalone = _parse(data)
        if standalone is not None:
            events = self._drain()
            events.append(standalone)
            return events

        self._pending.append(data)
        joined = _parse("\n".join(self._pending))
        if joined is None:
            return []
        self._pending.clear()
        return [joined]

    def flush(self) -> list[StreamEvent]:
        """End of stream: decode whatever is still pending."""
        return self._drain()

    def _drain(self) -> list[StreamEvent]:
        if not self._pending:
            return []
        data = "\n".join(self._pending)
        self._pending.clear()
        event = _parse(data)
        if event is None:
            logger.error("Failed to parse SSE event data", extra={"data": data})
            return []
        return [event]


def _parse(data: str) -> StreamEvent | None:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return StreamEvent.model_validate(payload)
    except ValidationError:
        return None


async def iter_events(
    lines: AsyncIterable[str], debug: bool = False,
) -> AsyncIterator[StreamEvent]:
    """Lazily decode an async line stream into StreamEvents, in arrival order."""
    decoder = SSEDecoder(debug=debug)
    async for line in lines:
        for event in decoder.decode_line(line):
            logger.debug(
                "Parsed SSE event",
                extra={"event": event.event, "id": event.id, "answer": event.answer},
            )
            yield event
    for event in decoder.flush():
        yield event
