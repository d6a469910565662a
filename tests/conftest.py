from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any

import pytest

from chatrelay.bus import SessionBus
from chatrelay.config import Settings
from chatrelay.session import ChannelSession
from chatrelay.transport import CONNECTED_STATE, ChatEntry, InboundMessage, TransportEvent


class FakeTransport:
    """Scriptable in-memory transport.

    `initialize()` pushes `connect_event` onto the event stream. Sent messages
    are echoed back as the last chat entry when `echo` is set.
    """

    def __init__(
        self,
        *,
        connect_event: str | None = "connected",
        state: str = CONNECTED_STATE,
        states: list[str] | None = None,
        init_error: Exception | None = None,
        ack: Any = None,
        echo: bool = False,
    ) -> None:
        self.connect_event = connect_event
        self.state = state
        self.states = list(states or [])
        self.init_error = init_error
        self.ack = ack
        self.echo = echo
        self.registered: dict[str, str | None] = {}
        self.lookup_error: Exception | None = None
        self.lookup_delay = 0.0
        self.state_delay = 0.0
        self.send_error: Exception | None = None
        self.send_delay = 0.0
        self.last_message: ChatEntry | None = None
        self.last_message_error: Exception | None = None
        self.unread_error: Exception | None = None
        self.initialized = 0
        self.lookups: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.unread: list[str] = []
        self.closed = False
        self._events: asyncio.Queue[TransportEvent | None] = asyncio.Queue()

    async def push(self, type_: str, reason: str = "", message: InboundMessage | None = None) -> None:
        await self._events.put(TransportEvent(type=type_, reason=reason, message=message))  # type: ignore[arg-type]

    async def initialize(self) -> None:
        self.initialized += 1
        if self.init_error is not None:
            raise self.init_error
        if self.connect_event is not None:
            await self.push(self.connect_event)

    async def get_state(self) -> str:
        if self.state_delay:
            await asyncio.sleep(self.state_delay)
        if self.states:
            return self.states.pop(0)
        return self.state

    async def get_info(self) -> dict[str, str]:
        return {"wid": "34600000000@c.us"}

    async def send_message(self, chat_id: str, text: str) -> Any:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append((chat_id, text))
        if self.send_error is not None:
            raise self.send_error
        if self.echo:
            self.last_message = ChatEntry(body=text, timestamp=time.time(), id=f"msg-{len(self.sent)}")
        return self.ack

    async def get_number_id(self, number: str) -> str | None:
        self.lookups.append(number)
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.registered.get(number, f"{number}@c.us")

    async def get_last_message(self, chat_id: str) -> ChatEntry | None:
        if self.last_message_error is not None:
            raise self.last_message_error
        return self.last_message

    async def mark_unread(self, chat_id: str) -> None:
        if self.unread_error is not None:
            raise self.unread_error
        self.unread.append(chat_id)

    async def close(self) -> None:
        self.closed = True
        await self._events.put(None)

    async def events(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event


class RecordingSleep:
    """Sleep replacement that records requested delays and only yields."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class StaticSessions:
    def __init__(self, session: ChannelSession) -> None:
        self.session = session


def fast_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "ready_timeout": 1.0,
        "stability_settle_delay": 0,
        "stability_retry_delay": 0,
        "reconnect_base_delay": 0.01,
        "reconnect_max_delay": 0.05,
        "reconnect_settle_delay": 0,
        "reconnect_followup_delay": 0,
        "health_check_timeout": 0.2,
        "message_delay": 0,
        "validation_timeout": 0.2,
        "validation_backoff": 0,
        "send_settle_delay": 0,
        "send_timeout": 0.2,
        "verification_grace": 0,
        "reply_delay": 0.05,
        "reply_send_pause": 0,
        "echo_marker_ttl": 10,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return fast_settings()


@pytest.fixture
def bus() -> SessionBus:
    return SessionBus()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
