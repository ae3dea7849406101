"""Response accumulator: decides when buffered answer text becomes a message.

The accumulator folds upstream StreamEvents into FlushDecisions under two
policies that are active at the same time:

* interval + size: a content event flushes when at least ``min_send_interval``
  seconds passed since the last flush AND at least ``min_chunk_size``
  characters are buffered;
* idle: when no event arrived for ``idle_window`` seconds and at least
  ``min_chunk_size`` characters are buffered, ``tick()`` flushes them.

Phases::

    IDLE -> ACCUMULATING -> FLUSHING -> ACCUMULATING | TERMINATED

A decision with ``should_flush`` moves the accumulator to FLUSHING; the owner
sends the text and calls ``commit()`` to clear the buffer and continue. The
accumulator does no I/O and reads time only through the injected clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from difygate.dify.models import CONTENT_KINDS, StreamEvent, StreamEventKind

TIMEOUT_NOTICE = "Sorry, the response took too long. Please try again later."


class AccumulatorPhase(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class FlushPolicy:
    min_send_interval: float = 10.0
    min_chunk_size: int = 100
    idle_window: float = 15.0


@dataclass(frozen=True)
class FlushDecision:
    should_flush: bool
    text: str = ""
    is_final: bool = False


_HOLD = FlushDecision(should_flush=False)
_DONE = FlushDecision(should_flush=False, is_final=True)


class ResponseAccumulator:
    """Per-turn buffer and flush policy. Owned by exactly one relay task."""

    def __init__(
        self,
        policy: FlushPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or FlushPolicy()
        self._clock = clock
        self._buffer: list[str] = []
        self._buffered_chars = 0
        self.turn_start_time = clock()
        self.last_flush_time = self.turn_start_time
        self.last_flush_size = 0
        self.flush_count = 0
        self.phase = AccumulatorPhase.IDLE
        self._pending: FlushDecision | None = None

    @property
    def buffered_text(self) -> str:
        return "".join(self._buffer)

    @property
    def buffered_chars(self) -> int:
        return self._buffered_chars

    @property
    def terminated(self) -> bool:
        return self.phase is AccumulatorPhase.TERMINATED

    # --- Transitions driven by the upstream stream ---

    def feed(self, event: StreamEvent) -> FlushDecision:
        """Apply one upstream event."""
        self._require_open()
        kind = event.kind

        if kind is StreamEventKind.MESSAGE_START:
            self._reset_buffer()
            self.phase = AccumulatorPhase.ACCUMULATING
            return _HOLD

        if kind in CONTENT_KINDS:
            self.phase = AccumulatorPhase.ACCUMULATING
            fragment = event.answer_fragment
            if not fragment:
                return _HOLD
            self._buffer.append(fragment)
            self._buffered_chars += len(fragment)
            if self._interval_elapsed() and self._chunk_ready():
                return self._flush(final=False)
            return _HOLD

        if kind is StreamEventKind.MESSAGE_END:
            return self.close()

        if kind is StreamEventKind.ERROR:
            return self.fail(f"Error from AI: {event.error_message}")

        # ping, workflow/node progress, agent_thought, message_file, ...
        return _HOLD

    def tick(self) -> FlushDecision:
        """Idle window elapsed with no new event."""
        self._require_open()
        if self._chunk_ready():
            return self._flush(final=False)
        return _HOLD

    def close(self) -> FlushDecision:
        """``message_end`` or end of stream: flush whatever remains as final."""
        self._require_open()
        if self._buffered_chars:
            return self._flush(final=True)
        self.phase = AccumulatorPhase.TERMINATED
        return _DONE

    def fail(self, message: str) -> FlushDecision:
        """Discard the buffer and replace it with an error message."""
        self._require_open()
        self._reset_buffer()
        return self._emit(message)

    def expire(self) -> FlushDecision:
        """Deadline hit: the user gets the timeout notice, not the partial buffer."""
        if self.phase is AccumulatorPhase.TERMINATED:
            return _DONE
        self._reset_buffer()
        return self._emit(TIMEOUT_NOTICE)

    # --- Flushing ---

    def commit(self) -> None:
        """Acknowledge that the pending decision was sent."""
        if self.phase is not AccumulatorPhase.FLUSHING or self._pending is None:
            raise RuntimeError("commit() called without a pending flush")
        decision = self._pending
        self._pending = None
        self.last_flush_time = self._clock()
        self.last_flush_size = len(decision.text)
        self.flush_count += 1
        self._reset_buffer()
        self.phase = (
            AccumulatorPhase.TERMINATED if decision.is_final
            else AccumulatorPhase.ACCUMULATING
        )

    def _flush(self, final: bool) -> FlushDecision:
        return self._enter_flushing(
            FlushDecision(should_flush=True, text=self.buffered_text, is_final=final),
        )

    def _emit(self, message: str) -> FlushDecision:
        return self._enter_flushing(
            FlushDecision(should_flush=True, text=message, is_final=True),
        )

    def _enter_flushing(self, decision: FlushDecision) -> FlushDecision:
        self._pending = decision
        self.phase = AccumulatorPhase.FLUSHING
        return decision

    # --- Helpers ---

    def _interval_elapsed(self) -> bool:
        return self._clock() - self.last_flush_time >= self.policy.min_send_interval

    def _chunk_ready(self) -> bool:
        return self._buffered_chars > 0 and self._buffered_chars >= self.policy.min_chunk_size

    def _reset_buffer(self) -> None:
        self._buffer.clear()
        self._buffered_chars = 0

    def _require_open(self) -> None:
        if self.phase is AccumulatorPhase.FLUSHING:
            raise RuntimeError("pending flush must be committed first")
        if self.phase is AccumulatorPhase.TERMINATED:
            raise RuntimeError("accumulator already terminated")
