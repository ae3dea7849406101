"""Process configuration, read once from ``DIFYGATE_*`` environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


class ConversationMode(str, Enum):
    NONE = "none"
    PER_USER = "per_user"


class SmtpSettings(BaseSettings):
    host: str = "smtp.gmail.com"
    port: int = 587
    username: str = ""
    password: str = ""
    from_name: str = "DifyGate Email Service"

    model_config = SettingsConfigDict(
        env_prefix="DIFYGATE_SMTP_", env_ignore_empty=True, frozen=True,
    )

    @field_validator("port", mode="before")
    @classmethod
    def _default_port(cls, value: Any) -> Any:
        # Unparseable ports fall back to the submission port
        try:
            return int(value)
        except (TypeError, ValueError):
            return 587


class RelaySettings(BaseSettings):
    min_send_interval: float = Field(default=10.0, ge=0)
    min_chunk_size: int = Field(default=100, ge=0)
    idle_window: float = Field(default=15.0, ge=0)
    response_timeout: float = Field(default=120.0, ge=0)
    conversation_mode: ConversationMode = ConversationMode.NONE

    model_config = SettingsConfigDict(
        env_prefix="DIFYGATE_", env_ignore_empty=True, frozen=True,
    )

    @field_validator("conversation_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class Settings(BaseSettings):
    api_key: str = ""
    dify_base_url: str = "https://api.dify.ai/v1"
    dify_api_key: str = ""
    dify_client_id: str = ""
    webhook_verify_token: str = ""
    whatsapp_app_secret: str = ""
    graph_api_token: str = ""
    graph_api_version: str = "v22.0"
    debug: bool = False
    audit_log_path: str | None = None
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)

    model_config = SettingsConfigDict(
        env_prefix="DIFYGATE_", env_ignore_empty=True, frozen=True,
    )

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from the environment; bad values raise ConfigError."""
        try:
            return cls()
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc
