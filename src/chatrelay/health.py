"""Periodic liveness probing of the active session."""

from __future__ import annotations

import asyncio
import time
from enum import StrEnum

from loguru import logger

from chatrelay.alerts import Alerts
from chatrelay.bus import SessionBus
from chatrelay.config import Settings
from chatrelay.reconnect import ReconnectionController
from chatrelay.transport import CONNECTED_STATE
from chatrelay.types import HEALTH_FAILURE, ConnectionEvent


class HealthOutcome(StrEnum):
    PASSED = "passed"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"
    SKIPPED = "skipped"


class HealthMonitor:
    """Probe the controller's current session and report failures on the bus."""

    def __init__(self, controller: ReconnectionController, bus: SessionBus, settings: Settings, alerts: Alerts) -> None:
        self._controller = controller
        self._bus = bus
        self._settings = settings
        self._alerts = alerts
        self.last_passed_at: float | None = None
        self.last_outcome: HealthOutcome | None = None

    async def check(self) -> HealthOutcome:
        outcome, detail = await self._probe()
        self.last_outcome = outcome
        if outcome is HealthOutcome.PASSED:
            self.last_passed_at = time.time()
            logger.debug("health.passed detail={}", detail)
        elif outcome is not HealthOutcome.SKIPPED:
            logger.warning("health.failed outcome={} detail={}", outcome, detail)
            # The controller may have started an attempt while the probe was in flight.
            if not self._controller.is_reconnecting:
                await self._alerts.emit("health_degraded", outcome=outcome.value, detail=detail)
                await self._bus.publish_connection(
                    ConnectionEvent(
                        type=HEALTH_FAILURE,
                        session_id=self._controller.session.session_id,
                        reason=f"{outcome.value}: {detail}",
                    )
                )
        return outcome

    async def _probe(self) -> tuple[HealthOutcome, str]:
        if self._controller.is_reconnecting:
            return HealthOutcome.SKIPPED, "reconnection in progress"

        session = self._controller.session
        if not session.is_stable:
            return HealthOutcome.SOFT_FAIL, f"session state is {session.state}"

        try:
            state = await asyncio.wait_for(session.probe(), timeout=self._settings.health_check_timeout)
        except TimeoutError:
            return HealthOutcome.HARD_FAIL, f"probe timed out after {self._settings.health_check_timeout:g}s"
        except Exception as exc:
            return HealthOutcome.HARD_FAIL, f"probe error: {exc}"

        if state != CONNECTED_STATE:
            return HealthOutcome.SOFT_FAIL, f"transport state is {state}, expected {CONNECTED_STATE}"
        return HealthOutcome.PASSED, state
