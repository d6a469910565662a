"""Signal-based operator alerts."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

from blinker import Signal
from loguru import logger

AlertHandler = Callable[..., Coroutine[Any, Any, None]]

ALERT_NAMES = (
    "reconnect_scheduled",
    "reconnected",
    "reconnect_failed",
    "terminal_failure",
    "auth_failed",
    "health_degraded",
    "session_teardown",
)


class Alerts:
    """Operator-facing notifications backed by blinker signals.

    Mail or chat-ops senders live outside the relay and subscribe with
    `connect`. A failing receiver is logged and never interrupts the sender.
    """

    def __init__(self) -> None:
        self._signals = {name: Signal(f"chatrelay.{name}") for name in ALERT_NAMES}

    def connect(self, name: str, handler: AlertHandler) -> Callable[[], None]:
        signal = self._signals[name]

        async def _receiver(sender: Any, **payload: Any) -> None:
            await handler(**payload)

        signal.connect(_receiver, weak=False)
        return lambda: signal.disconnect(_receiver)

    async def emit(self, name: str, **payload: Any) -> None:
        signal = self._signals[name]
        if not signal.receivers:
            return
        try:
            await signal.send_async(self, **payload)
        except Exception:
            logger.exception("alerts.receiver.error alert={}", name)
