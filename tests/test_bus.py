from __future__ import annotations

from typing import Any

import pytest

from chatrelay.alerts import Alerts
from chatrelay.bus import SessionBus
from chatrelay.transport import InboundMessage
from chatrelay.types import ConnectionEvent, SessionState


@pytest.mark.asyncio
async def test_bus_keeps_queues_separate() -> None:
    bus = SessionBus()
    message = InboundMessage(chat_id="34612345678@c.us", body="hola")
    event = ConnectionEvent(type=SessionState.STABLE, session_id="s1")

    await bus.publish_inbound(message)
    await bus.publish_connection(event)

    assert await bus.next_connection(timeout_seconds=0.1) == event
    assert await bus.next_inbound(timeout_seconds=0.1) == message
    assert await bus.next_inbound(timeout_seconds=0.01) is None


@pytest.mark.asyncio
async def test_alert_receiver_errors_do_not_reach_sender() -> None:
    alerts = Alerts()

    async def broken(**_payload: Any) -> None:
        raise RuntimeError("smtp down")

    alerts.connect("terminal_failure", broken)

    await alerts.emit("terminal_failure", attempts=5)
    await alerts.emit("reconnected", session_id="unheard")


@pytest.mark.asyncio
async def test_alert_unsubscribe() -> None:
    alerts = Alerts()
    received: list[dict[str, Any]] = []

    async def recorder(**payload: Any) -> None:
        received.append(payload)

    unsubscribe = alerts.connect("reconnected", recorder)
    await alerts.emit("reconnected", session_id="a")
    unsubscribe()
    await alerts.emit("reconnected", session_id="b")

    assert received == [{"session_id": "a"}]
