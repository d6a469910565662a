"""Shared state and event types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class SessionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    STABLE = "stable"
    DISCONNECTED = "disconnected"
    AUTH_FAILED = "auth_failed"


HEALTH_FAILURE = "health_failure"


@dataclass(frozen=True)
class ConnectionEvent:
    """Diagnostic record of a session transition or a health failure.

    `type` is a `SessionState` value for transitions and `HEALTH_FAILURE` for
    failed probes.
    """

    type: str
    session_id: str
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }
