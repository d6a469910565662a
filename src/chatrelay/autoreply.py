"""Closed-hours auto replies with per-conversation debounce and suppression."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from datetime import datetime
from functools import partial
from typing import Any

from loguru import logger

from chatrelay.config import Settings
from chatrelay.delivery import SessionSource
from chatrelay.hours import BusinessHoursOracle
from chatrelay.session import Sleep
from chatrelay.transport import InboundMessage

TimerCallback = Callable[[], Awaitable[None]]


class ReplyTimers:
    """Cancellable delayed callbacks keyed by conversation id.

    A key holds at most one pending timer; scheduling again replaces it. Once
    a timer is due its callback is detached from the key, so cancelling the
    key afterwards does not interrupt a reply that is already being sent.
    """

    def __init__(self, *, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep
        self._pending: dict[str, tuple[asyncio.Task[None], TimerCallback]] = {}
        self._running: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self, key: str) -> bool:
        return key in self._pending

    def schedule(self, key: str, delay: float, callback: TimerCallback) -> None:
        self.cancel(key)
        task = asyncio.create_task(self._wait_and_run(key, delay, callback))
        self._pending[key] = (task, callback)

    def cancel(self, key: str) -> bool:
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    async def fire(self, key: str) -> bool:
        """Run the pending callback for `key` now instead of at its due time."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        task, callback = entry
        task.cancel()
        await self._invoke(key, callback)
        return True

    def cancel_all(self) -> int:
        keys = list(self._pending)
        for key in keys:
            self.cancel(key)
        return len(keys)

    async def close(self) -> None:
        self.cancel_all()
        running = list(self._running)
        for task in running:
            task.cancel()
        for task in running:
            with suppress(asyncio.CancelledError):
                await task

    async def _wait_and_run(self, key: str, delay: float, callback: TimerCallback) -> None:
        await self._sleep(delay)
        current = asyncio.current_task()
        entry = self._pending.get(key)
        if current is None or entry is None or entry[0] is not current:
            return
        del self._pending[key]
        self._running.add(current)
        try:
            await self._invoke(key, callback)
        finally:
            self._running.discard(current)

    @staticmethod
    async def _invoke(key: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("autoreply.timer.error key={}", key)


class AutoReplyScheduler:
    """Schedule one delayed closed-hours reply per conversation.

    Every new inbound message on a conversation pushes its pending reply back.
    A conversation gets at most one reply per suppression window.
    """

    def __init__(
        self,
        oracle: BusinessHoursOracle,
        sessions: SessionSource,
        settings: Settings,
        *,
        timers: ReplyTimers | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._oracle = oracle
        self._sessions = sessions
        self._settings = settings
        self.timers = timers or ReplyTimers()
        self._clock = clock
        self._now = now
        self._sleep = sleep
        self._replied: dict[str, float] = {}
        self._recently_sent: dict[str, float] = {}

    async def handle_inbound(self, message: InboundMessage) -> bool:
        """Process one inbound message. Returns whether a reply is now pending."""
        try:
            return self._handle(message)
        except Exception:
            logger.exception("autoreply.inbound.error chat_id={}", message.chat_id)
            return False

    def has_recently_replied(self, conversation: str) -> bool:
        replied_at = self._replied.get(conversation)
        if replied_at is None:
            return False
        return self._clock() - replied_at < self._settings.reply_suppression_window

    def mark_replied(self, conversation: str) -> None:
        self._replied[conversation] = self._clock()

    async def on_session_teardown(self, **_payload: Any) -> None:
        cancelled = self.timers.cancel_all()
        if cancelled:
            logger.info("autoreply.teardown cancelled={}", cancelled)

    def sweep(self) -> int:
        """Drop expired suppression entries and echo markers."""
        now = self._clock()
        expired = [key for key, at in self._replied.items() if now - at >= self._settings.reply_suppression_window]
        for key in expired:
            del self._replied[key]
        for key in [key for key, at in self._recently_sent.items() if now - at >= self._settings.echo_marker_ttl]:
            del self._recently_sent[key]
        logger.debug("autoreply.sweep expired={} remaining={}", len(expired), len(self._replied))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        return {
            "replied_conversations": len(self._replied),
            "pending_replies": len(self.timers),
            "business_hours": self._oracle.status(self._current_time()),
        }

    def _handle(self, message: InboundMessage) -> bool:
        reason = self._ignore_reason(message)
        if reason is not None:
            logger.debug("autoreply.ignored chat_id={} reason={}", message.chat_id, reason)
            return False

        conversation = message.chat_id
        if self.timers.cancel(conversation):
            logger.info("autoreply.debounced chat_id={}", conversation)

        text = self._oracle.get_auto_reply_message(self._current_time())
        if text is None:
            logger.info("autoreply.skipped chat_id={} reason=business hours", conversation)
            return False
        if self.has_recently_replied(conversation):
            logger.info("autoreply.skipped chat_id={} reason=recently replied", conversation)
            return False

        self.timers.schedule(conversation, self._settings.reply_delay, partial(self._send_reply, conversation, text))
        logger.info("autoreply.scheduled chat_id={} delay={}s", conversation, self._settings.reply_delay)
        return True

    def _ignore_reason(self, message: InboundMessage) -> str | None:
        if message.is_group:
            return "group"
        if message.is_broadcast:
            return "broadcast"
        if message.is_status:
            return "status"
        if message.from_me:
            return "own message"
        if not message.chat_id or message.chat_id == message.to:
            return "no valid sender"
        sent_at = self._recently_sent.get(message.chat_id)
        if sent_at is not None and self._clock() - sent_at < self._settings.echo_marker_ttl:
            return "echo of our reply"
        return None

    async def _send_reply(self, conversation: str, text: str) -> None:
        if self.has_recently_replied(conversation):
            logger.info("autoreply.cancelled chat_id={} reason=recently replied", conversation)
            return

        session = self._sessions.session
        await session.ensure_stable()
        if self._settings.reply_send_pause > 0:
            await self._sleep(self._settings.reply_send_pause)
        self._recently_sent[conversation] = self._clock()
        await asyncio.wait_for(
            session.transport.send_message(conversation, text), timeout=self._settings.send_timeout
        )
        self.mark_replied(conversation)
        logger.info("autoreply.sent chat_id={}", conversation)

        try:
            await session.transport.mark_unread(conversation)
        except Exception as exc:
            logger.warning("autoreply.mark_unread.error chat_id={} error={}", conversation, exc)

    def _current_time(self) -> datetime | None:
        return self._now() if self._now is not None else None
