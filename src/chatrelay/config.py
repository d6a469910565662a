"""Configuration management for chatrelay."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings. Durations are in seconds."""

    model_config = SettingsConfigDict(
        env_prefix="CHATRELAY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Transport
    transport: str | None = Field(None, description="Transport factory entrypoint, e.g. 'package.module:factory'")

    # Session lifecycle
    ready_timeout: float = Field(default=90.0, description="Maximum wait for a session to become stable")
    stability_settle_delay: float = Field(default=5.0, description="Wait after 'connected' before the liveness probe")
    stability_retry_delay: float = Field(default=3.0, description="Wait before the second liveness probe")

    # Reconnection
    reconnect_base_delay: float = Field(default=30.0)
    reconnect_max_delay: float = Field(default=300.0)
    reconnect_max_attempts: int = Field(default=5)
    reconnect_settle_delay: float = Field(default=3.0, description="Wait between teardown and rebuild")
    reconnect_followup_delay: float = Field(default=5.0, description="Wait before re-escalating after a failed attempt")

    # Health monitoring
    health_check_interval: float = Field(default=60.0)
    health_check_timeout: float = Field(default=10.0)

    # Delivery
    message_delay: float = Field(default=60.0, description="Minimum spacing between dispatch starts")
    validation_timeout: float = Field(default=15.0)
    validation_attempts: int = Field(default=3)
    validation_backoff: float = Field(default=2.0)
    send_settle_delay: float = Field(default=2.0)
    send_timeout: float = Field(default=20.0)
    verification_grace: float = Field(default=1.0)
    verification_tolerance: float = Field(default=5.0)

    # Auto-reply
    business_hours_path: Path | None = Field(None, description="Business hours JSON file")
    business_hours_reload_interval: float = Field(default=3600.0)
    reply_delay: float = Field(default=30.0)
    reply_suppression_window: float = Field(default=3600.0)
    reply_send_pause: float = Field(default=2.0, description="Pause right before an auto reply is sent")
    echo_marker_ttl: float = Field(default=10.0)

    # Logging
    log_level: str = Field(default="INFO")


def load_settings(**overrides: Any) -> Settings:
    """Load settings from the environment and `.env`, applying explicit overrides."""

    settings = Settings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if updates:
        settings = settings.model_copy(update=updates)
    return settings
