"""Reconnection with bounded exponential backoff."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from chatrelay.alerts import Alerts
from chatrelay.bus import SessionBus
from chatrelay.config import Settings
from chatrelay.errors import AuthenticationError
from chatrelay.session import HISTORY_LIMIT, ChannelSession, Sleep
from chatrelay.types import HEALTH_FAILURE, ConnectionEvent, SessionState

SessionFactory = Callable[[], ChannelSession]


@dataclass
class ReconnectionAttempt:
    count: int = 0
    next_delay: float = 0.0
    is_reconnecting: bool = False


class ReconnectionController:
    """Own the current session and rebuild it after disconnects.

    At most one attempt is in flight. The counter only goes back to zero once a
    session reaches `STABLE`; when the budget is spent the controller reports a
    terminal failure once and stays idle until `reset()`.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        bus: SessionBus,
        settings: Settings,
        alerts: Alerts,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._factory = session_factory
        self._bus = bus
        self._settings = settings
        self._alerts = alerts
        self._sleep = sleep
        self._session = session_factory()
        self._task: asyncio.Task[None] | None = None
        self._history: deque[ConnectionEvent] = deque(maxlen=HISTORY_LIMIT)
        self.attempt = ReconnectionAttempt()
        self.exhausted = False
        self.auth_failed = False

    @property
    def session(self) -> ChannelSession:
        return self._session

    @property
    def is_reconnecting(self) -> bool:
        return self.attempt.is_reconnecting

    def backoff_delay(self, count: int) -> float:
        return min(self._settings.reconnect_base_delay * 2**count, self._settings.reconnect_max_delay)

    async def run(self) -> None:
        """Consume connection events until cancelled."""
        while True:
            event = await self._bus.next_connection()
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("reconnect.event.error event={}", event.type)

    async def handle_event(self, event: ConnectionEvent) -> None:
        self._history.append(event)
        if event.session_id != self._session.session_id:
            logger.debug("reconnect.event.stale event={} session_id={}", event.type, event.session_id)
            return

        if event.type == SessionState.STABLE:
            if self.attempt.count:
                logger.info("reconnect.counter.reset previous_count={}", self.attempt.count)
            self.attempt.count = 0
            self.exhausted = False
        elif event.type == SessionState.AUTH_FAILED:
            self.auth_failed = True
            logger.error("reconnect.auth_failed session_id={} reason={}", event.session_id, event.reason)
            await self._alerts.emit(
                "auth_failed",
                reason=event.reason,
                action="re-authenticate the transport session manually",
            )
        elif event.type in (SessionState.DISCONNECTED, HEALTH_FAILURE):
            await self.trigger(event.reason or event.type)

    async def trigger(self, reason: str) -> bool:
        """Schedule one reconnection attempt. Returns whether an attempt was scheduled."""
        if self.attempt.is_reconnecting:
            logger.info("reconnect.already_in_progress reason={}", reason)
            return False
        if self.auth_failed:
            logger.warning("reconnect.skipped reason={} auth_failed=true", reason)
            return False
        if self.attempt.count >= self._settings.reconnect_max_attempts:
            await self._report_exhausted()
            return False

        delay = self.backoff_delay(self.attempt.count)
        self.attempt.count += 1
        self.attempt.next_delay = delay
        self.attempt.is_reconnecting = True
        logger.info(
            "reconnect.scheduled attempt={}/{} delay={}s reason={}",
            self.attempt.count,
            self._settings.reconnect_max_attempts,
            delay,
            reason,
        )
        await self._alerts.emit(
            "reconnect_scheduled",
            attempt=self.attempt.count,
            max_attempts=self._settings.reconnect_max_attempts,
            delay=delay,
            reason=reason,
        )
        self._task = asyncio.create_task(self._run_attempt(delay))
        return True

    async def attempt_reconnection(self) -> None:
        """Tear down the current session and bring up a fresh one."""
        previous = self._session
        logger.info("reconnect.attempt.start attempt={} session_id={}", self.attempt.count, previous.session_id)
        try:
            await previous.close()
        except Exception as exc:
            logger.warning("reconnect.teardown.error session_id={} error={}", previous.session_id, exc)
        await self._alerts.emit("session_teardown", session_id=previous.session_id)

        await self._sleep(self._settings.reconnect_settle_delay)
        self._session = self._factory()
        await self._session.initialize()
        logger.info("reconnect.attempt.done attempt={} session_id={}", self.attempt.count, self._session.session_id)

    def reset(self) -> None:
        """Re-arm automatic reconnection after manual intervention."""
        self.attempt = ReconnectionAttempt()
        self.exhausted = False
        self.auth_failed = False
        logger.info("reconnect.reset")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    def status(self) -> dict[str, Any]:
        return {
            **asdict(self.attempt),
            "max_attempts": self._settings.reconnect_max_attempts,
            "exhausted": self.exhausted,
            "auth_failed": self.auth_failed,
            "session": self._session.status(),
            "history": [event.as_dict() for event in list(self._history)[-10:]],
        }

    async def _run_attempt(self, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self.attempt_reconnection()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.attempt.is_reconnecting = False
            logger.error("reconnect.attempt.failed attempt={} error={}", self.attempt.count, exc)
            await self._alerts.emit("reconnect_failed", attempt=self.attempt.count, error=str(exc))
            if isinstance(exc, AuthenticationError):
                self.auth_failed = True
                await self._alerts.emit(
                    "auth_failed",
                    reason=str(exc),
                    action="re-authenticate the transport session manually",
                )
                return
            if self.attempt.count < self._settings.reconnect_max_attempts:
                await self._sleep(self._settings.reconnect_followup_delay)
                await self.trigger("follow-up after failed attempt")
            else:
                await self._report_exhausted()
            return

        self.attempt.count = 0
        self.attempt.is_reconnecting = False
        self.exhausted = False
        await self._alerts.emit("reconnected", session_id=self._session.session_id)

    async def _report_exhausted(self) -> None:
        if self.exhausted:
            return
        self.exhausted = True
        logger.error(
            "reconnect.exhausted attempts={} manual intervention required", self._settings.reconnect_max_attempts
        )
        await self._alerts.emit(
            "terminal_failure",
            attempts=self.attempt.count,
            max_attempts=self._settings.reconnect_max_attempts,
            action="check the transport and restart manually",
        )
