"""In-memory async bus between the session and its consumers."""

from __future__ import annotations

import asyncio

from chatrelay.transport import InboundMessage
from chatrelay.types import ConnectionEvent


class SessionBus:
    """Queues for inbound chat messages and connection events.

    Each queue has exactly one consumer loop: inbound messages feed the
    auto-reply scheduler, connection events feed the reconnection controller.
    The bus outlives individual sessions.
    """

    def __init__(self) -> None:
        self._inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._connection: asyncio.Queue[ConnectionEvent] = asyncio.Queue()

    async def publish_inbound(self, message: InboundMessage) -> None:
        await self._inbound.put(message)

    async def publish_connection(self, event: ConnectionEvent) -> None:
        await self._connection.put(event)

    async def next_inbound(self, timeout_seconds: float | None = None) -> InboundMessage | None:
        if timeout_seconds is None:
            return await self._inbound.get()
        try:
            return await asyncio.wait_for(self._inbound.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None

    async def next_connection(self, timeout_seconds: float | None = None) -> ConnectionEvent | None:
        if timeout_seconds is None:
            return await self._connection.get()
        try:
            return await asyncio.wait_for(self._connection.get(), timeout=timeout_seconds)
        except TimeoutError:
            return None
