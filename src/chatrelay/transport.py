"""Chat transport contract consumed by the relay."""

from __future__ import annotations

import importlib
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from chatrelay.errors import ConfigurationError

CONNECTED_STATE = "CONNECTED"

TransportEventType = Literal["connected", "disconnected", "auth_failure", "message"]


@dataclass(frozen=True)
class InboundMessage:
    """Chat message received from the transport."""

    chat_id: str
    body: str
    to: str = ""
    from_me: bool = False
    is_status: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.chat_id.endswith("@g.us")

    @property
    def is_broadcast(self) -> bool:
        return "@broadcast" in self.chat_id


@dataclass(frozen=True)
class TransportEvent:
    """One item of the transport event stream."""

    type: TransportEventType
    reason: str = ""
    message: InboundMessage | None = None


@dataclass(frozen=True)
class ChatEntry:
    """Latest entry of a conversation, as read back for delivery verification."""

    body: str
    timestamp: float
    id: str | None = None


class Transport(Protocol):
    """Capabilities the relay needs from the external chat library."""

    async def initialize(self) -> None: ...

    async def get_state(self) -> str: ...

    async def get_info(self) -> Any: ...

    async def send_message(self, chat_id: str, text: str) -> Any: ...

    async def get_number_id(self, number: str) -> str | None: ...

    async def get_last_message(self, chat_id: str) -> ChatEntry | None: ...

    async def mark_unread(self, chat_id: str) -> None: ...

    async def close(self) -> None: ...

    def events(self) -> AsyncIterator[TransportEvent]: ...


TransportFactory = Callable[[], Transport]


def load_transport_factory(entrypoint: str | None) -> TransportFactory:
    """Resolve a `module:attribute` entrypoint to a zero-argument transport factory."""

    if not entrypoint:
        raise ConfigurationError("no transport configured, set CHATRELAY_TRANSPORT to 'module:factory'")
    module_name, sep, attr = entrypoint.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"invalid transport entrypoint: {entrypoint!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import transport module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"transport entrypoint {entrypoint!r} is not callable")
    return factory
