"""Relay runtime: wires the session, recovery, delivery and auto replies."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from loguru import logger

from chatrelay.alerts import Alerts
from chatrelay.autoreply import AutoReplyScheduler, ReplyTimers
from chatrelay.bus import SessionBus
from chatrelay.config import Settings
from chatrelay.delivery import DeliveryPipeline, SendJob, SendResult, result_to_dict
from chatrelay.health import HealthMonitor
from chatrelay.hours import BusinessHoursOracle
from chatrelay.ratelimit import RateLimiter
from chatrelay.reconnect import ReconnectionController
from chatrelay.session import ChannelSession, Sleep
from chatrelay.transport import TransportFactory, load_transport_factory


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    outcome: SendResult

    def as_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "outcome": result_to_dict(self.outcome)}


class RelayRuntime:
    """Own one channel and everything that keeps it usable.

    `start()` connects loudly: a session that cannot come up raises. After
    that, disconnects and failed health checks are recovered in the
    background, inbound messages feed the auto-reply scheduler and
    `process_jobs` sends batches through the rate-limited pipeline.
    """

    def __init__(
        self,
        settings: Settings,
        transport_factory: TransportFactory,
        *,
        alerts: Alerts | None = None,
        oracle: BusinessHoursOracle | None = None,
        scheduler: BaseScheduler | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._transport_factory = transport_factory
        self._sleep = sleep
        self.bus = SessionBus()
        self.alerts = alerts or Alerts()
        self.controller = ReconnectionController(self._new_session, self.bus, settings, self.alerts, sleep=sleep)
        self.health = HealthMonitor(self.controller, self.bus, settings, self.alerts)
        self.pipeline = DeliveryPipeline(self.controller, settings, sleep=sleep)
        self.rate_limiter = RateLimiter(settings.message_delay, sleep=sleep)
        self.oracle = oracle or BusinessHoursOracle(path=settings.business_hours_path)
        self.autoreply = AutoReplyScheduler(
            self.oracle, self.controller, settings, timers=ReplyTimers(sleep=sleep), sleep=sleep
        )
        self.scheduler = scheduler or AsyncIOScheduler()
        self._tasks: list[asyncio.Task[None]] = []
        self._processing = False
        self._started = False
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def session(self) -> ChannelSession:
        return self.controller.session

    async def __aenter__(self) -> RelayRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._started:
            return
        logger.info("runtime.start session_id={}", self.session.session_id)
        try:
            await self.session.initialize()
        except BaseException:
            logger.error("runtime.start.failed session_id={} state={}", self.session.session_id, self.session.state)
            with suppress(Exception):
                await self.session.close()
            raise
        self._unsubscribe = self.alerts.connect("session_teardown", self.autoreply.on_session_teardown)
        self._tasks.append(asyncio.create_task(self.controller.run(), name="chatrelay.reconnect"))
        self._tasks.append(asyncio.create_task(self._consume_inbound(), name="chatrelay.inbound"))
        self._schedule_jobs()
        self._started = True
        logger.info("runtime.started session_id={}", self.session.session_id)

    async def stop(self) -> None:
        if self.scheduler.running:
            with suppress(Exception):
                self.scheduler.shutdown(wait=False)
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.autoreply.timers.close()
        await self.controller.stop()
        try:
            await self.session.close()
        except Exception as exc:
            logger.warning("runtime.session.close_error error={}", exc)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._started = False
        logger.info("runtime.stopped")

    async def process_jobs(self, jobs: Iterable[tuple[str, SendJob]]) -> list[JobOutcome]:
        """Send a batch one job at a time, spaced by the rate limiter."""
        if self._processing:
            logger.warning("runtime.batch.rejected reason=already running")
            return []

        self._processing = True
        started_at = time.monotonic()
        outcomes: list[JobOutcome] = []
        try:
            for job_id, job in jobs:
                await self.rate_limiter.wait_if_needed()
                logger.info("runtime.batch.job job_id={}", job_id)
                outcomes.append(JobOutcome(job_id=job_id, outcome=await self.pipeline.send(job)))
        finally:
            self._processing = False

        counts = Counter(item.outcome.status for item in outcomes)
        logger.info(
            "runtime.batch.done total={} sent={} no_channel={} failed={} duration={:.1f}s",
            len(outcomes),
            counts["sent"],
            counts["no_channel"],
            counts["send_error"],
            time.monotonic() - started_at,
        )
        return outcomes

    def status(self) -> dict[str, Any]:
        return {
            "connection": self.controller.status(),
            "health": {
                "last_outcome": self.health.last_outcome.value if self.health.last_outcome else None,
                "last_passed_at": self.health.last_passed_at,
            },
            "autoreply": self.autoreply.stats(),
            "message_delay": self.rate_limiter.delay,
            "processing": self._processing,
        }

    def _new_session(self) -> ChannelSession:
        return ChannelSession(self._transport_factory(), self.bus, self.settings, sleep=self._sleep)

    def _schedule_jobs(self) -> None:
        common = {"trigger": "interval", "coalesce": True, "max_instances": 1, "replace_existing": True}
        self.scheduler.add_job(
            self.health.check, id="health_check", seconds=self.settings.health_check_interval, **common
        )
        self.scheduler.add_job(
            self._sweep_replies, id="autoreply_sweep", seconds=self.settings.reply_suppression_window, **common
        )
        self.scheduler.add_job(
            self._reload_hours,
            id="business_hours_reload",
            seconds=self.settings.business_hours_reload_interval,
            **common,
        )
        if not self.scheduler.running:
            self.scheduler.start()

    async def _consume_inbound(self) -> None:
        while True:
            message = await self.bus.next_inbound()
            await self.autoreply.handle_inbound(message)

    async def _sweep_replies(self) -> None:
        self.autoreply.sweep()

    async def _reload_hours(self) -> None:
        self.oracle.reload()


def build_runtime(settings: Settings, transport_factory: TransportFactory | None = None) -> RelayRuntime:
    """Build a runtime, resolving the transport from settings when not given."""
    factory = transport_factory or load_transport_factory(settings.transport)
    return RelayRuntime(settings, factory)
