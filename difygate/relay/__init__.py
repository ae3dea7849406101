"""Streaming relay between WhatsApp webhooks and the Dify chat API.

This package provides:
- ResponseAccumulator: flush policy state machine for partial answers
- RelayOrchestrator: per-message task dispatch, deadline and delivery
"""

from difygate.relay.accumulator import (
    TIMEOUT_NOTICE,
    AccumulatorPhase,
    FlushDecision,
    FlushPolicy,
    ResponseAccumulator,
)
from difygate.relay.orchestrator import UPSTREAM_ERROR_TEMPLATE, RelayOrchestrator

__all__ = [
    "TIMEOUT_NOTICE",
    "UPSTREAM_ERROR_TEMPLATE",
    "AccumulatorPhase",
    "FlushDecision",
    "FlushPolicy",
    "RelayOrchestrator",
    "ResponseAccumulator",
]
