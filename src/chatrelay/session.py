"""Channel session lifecycle against the external transport."""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

from loguru import logger

from chatrelay.bus import SessionBus
from chatrelay.config import Settings
from chatrelay.errors import AuthenticationError, ReadyTimeout, SessionStateError, TransientTransportError
from chatrelay.transport import CONNECTED_STATE, Transport, TransportEvent
from chatrelay.types import ConnectionEvent, SessionState

Sleep = Callable[[float], Awaitable[None]]

HISTORY_LIMIT = 100

_ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.READY, SessionState.DISCONNECTED, SessionState.AUTH_FAILED}),
    SessionState.READY: frozenset({SessionState.STABLE, SessionState.DISCONNECTED, SessionState.AUTH_FAILED}),
    SessionState.STABLE: frozenset({SessionState.DISCONNECTED, SessionState.AUTH_FAILED}),
    SessionState.DISCONNECTED: frozenset(),
    SessionState.AUTH_FAILED: frozenset(),
}
_TERMINAL_STATES = frozenset({SessionState.DISCONNECTED, SessionState.AUTH_FAILED})
_LIVE_STATES = frozenset({SessionState.CONNECTING, SessionState.READY, SessionState.STABLE})


class ChannelSession:
    """One connection to the chat transport, driven by a single state machine.

    The session is the only writer of its state. Transport events are consumed
    by one pump task, every transition is recorded and published on the bus,
    and callers suspend on a condition until the session settles.
    A session that reached `DISCONNECTED` or `AUTH_FAILED` is spent; recovery
    builds a new one.
    """

    def __init__(
        self,
        transport: Transport,
        bus: SessionBus,
        settings: Settings,
        *,
        session_id: str | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.transport = transport
        self._bus = bus
        self._settings = settings
        self._sleep = sleep
        self._state = SessionState.IDLE
        self._changed = asyncio.Condition()
        self._history: deque[ConnectionEvent] = deque(maxlen=HISTORY_LIMIT)
        self._pump_task: asyncio.Task[None] | None = None
        self._stabilize_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_stable(self) -> bool:
        return self._state is SessionState.STABLE

    @property
    def history(self) -> list[ConnectionEvent]:
        return list(self._history)

    async def initialize(self) -> None:
        """Connect, or join an in-progress connection, and wait until stable."""
        if self._state is SessionState.STABLE:
            logger.debug("session.initialize.already_stable session_id={}", self.session_id)
            return
        if self._state is SessionState.AUTH_FAILED:
            raise AuthenticationError("transport rejected the credentials, re-authentication required")
        if self._state is SessionState.DISCONNECTED:
            raise TransientTransportError(f"session {self.session_id} is closed")

        if self._state is SessionState.IDLE:
            await self._transition(SessionState.CONNECTING, "initialize")
            self._pump_task = asyncio.create_task(self._pump())
            try:
                await self.transport.initialize()
            except AuthenticationError:
                await self._cancel_tasks()
                if self._state in _LIVE_STATES:
                    await self._transition(SessionState.AUTH_FAILED, "credentials rejected during initialize")
                raise
            except Exception as exc:
                logger.opt(exception=True).error("session.initialize.error session_id={}", self.session_id)
                await self._cancel_tasks()
                if self._state in _LIVE_STATES:
                    await self._transition(SessionState.DISCONNECTED, f"initialize failed: {exc}")
                raise TransientTransportError(f"transport initialization failed: {exc}") from exc
        else:
            logger.info("session.initialize.joining session_id={} state={}", self.session_id, self._state)

        await self.wait_for_ready(self._settings.ready_timeout)

    async def wait_for_ready(self, max_wait: float | None = None) -> None:
        """Suspend until the session is stable. Does not retry."""
        timeout = self._settings.ready_timeout if max_wait is None else max_wait
        try:
            async with asyncio.timeout(timeout):
                async with self._changed:
                    await self._changed.wait_for(self._settled)
        except TimeoutError as exc:
            raise ReadyTimeout(f"session {self.session_id} not stable within {timeout:g}s (state={self._state})") from exc

        if self._state is SessionState.AUTH_FAILED:
            raise AuthenticationError("transport rejected the credentials, re-authentication required")
        if self._state is SessionState.DISCONNECTED:
            raise TransientTransportError(f"session {self.session_id} disconnected while waiting for ready")

    def _settled(self) -> bool:
        return self._state is SessionState.STABLE or self._state in _TERMINAL_STATES

    async def ensure_stable(self) -> None:
        if self._state is not SessionState.STABLE:
            logger.warning("session.not_stable session_id={} state={}", self.session_id, self._state)
            await self.initialize()

    async def probe(self) -> str:
        """Query transport state and info once."""
        state = await self.transport.get_state()
        await self.transport.get_info()
        return state

    async def close(self) -> None:
        await self._cancel_tasks()
        try:
            await self.transport.close()
        finally:
            if self._state in _LIVE_STATES:
                await self._transition(SessionState.DISCONNECTED, "closed")
            logger.info("session.closed session_id={}", self.session_id)

    def status(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "history": [event.as_dict() for event in list(self._history)[-10:]],
        }

    async def _transition(self, new_state: SessionState, reason: str = "") -> None:
        if new_state is self._state:
            return
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise SessionStateError(f"transition {self._state} -> {new_state} is not allowed")

        previous = self._state
        self._state = new_state
        event = ConnectionEvent(type=new_state.value, session_id=self.session_id, reason=reason)
        self._history.append(event)
        logger.info(
            "session.transition session_id={} from={} to={} reason={}",
            self.session_id,
            previous,
            new_state,
            reason,
        )
        async with self._changed:
            self._changed.notify_all()
        await self._bus.publish_connection(event)

    async def _pump(self) -> None:
        try:
            async for event in self.transport.events():
                await self._handle_transport_event(event)
                if self._state in _TERMINAL_STATES:
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("session.pump.error session_id={}", self.session_id)
            if self._state in _LIVE_STATES:
                await self._transition(SessionState.DISCONNECTED, "event stream failed")

    async def _handle_transport_event(self, event: TransportEvent) -> None:
        if event.type == "message":
            if event.message is not None:
                await self._bus.publish_inbound(event.message)
            return

        try:
            if event.type == "connected":
                if self._state is not SessionState.CONNECTING:
                    logger.warning("session.connected.ignored session_id={} state={}", self.session_id, self._state)
                    return
                await self._transition(SessionState.READY, event.reason or "connected")
                self._stabilize_task = asyncio.create_task(self._stabilize())
            elif event.type == "disconnected":
                await self._transition(SessionState.DISCONNECTED, event.reason or "transport closed")
            elif event.type == "auth_failure":
                await self._transition(SessionState.AUTH_FAILED, event.reason or "authentication failed")
        except SessionStateError as exc:
            logger.warning("session.event.ignored session_id={} event={} error={}", self.session_id, event.type, exc)

    async def _stabilize(self) -> None:
        await self._sleep(self._settings.stability_settle_delay)
        for attempt in (1, 2):
            if self._state is not SessionState.READY:
                return
            try:
                state = await self.probe()
                if state != CONNECTED_STATE:
                    raise TransientTransportError(f"transport state is {state}")
            except Exception as exc:
                logger.warning(
                    "session.stabilize.probe_failed session_id={} attempt={} error={}", self.session_id, attempt, exc
                )
                if attempt == 1:
                    await self._sleep(self._settings.stability_retry_delay)
                continue
            if self._state is SessionState.READY:
                await self._transition(SessionState.STABLE, "liveness probe passed")
            return
        logger.error("session.stabilize.failed session_id={}", self.session_id)

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._stabilize_task, self._pump_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._stabilize_task = None
        self._pump_task = None
