"""Shared Pydantic data models for difygate."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

# --- Enums ---


class AuditEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    WEBHOOK_VERIFIED = "webhook_verified"
    WEBHOOK_REJECTED = "webhook_rejected"
    RELAY_COMPLETED = "relay_completed"
    RELAY_FAILED = "relay_failed"
    RELAY_TIMEOUT = "relay_timeout"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    source_ip: str | None = None
    user_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "timeout"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
