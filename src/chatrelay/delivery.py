"""Outbound delivery: recipient checks, sending and delivery verification."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, ClassVar, Protocol

from loguru import logger

from chatrelay.config import Settings
from chatrelay.errors import AuthenticationError, TransientTransportError, ValidationError
from chatrelay.recipients import normalize_recipient
from chatrelay.session import ChannelSession, Sleep
from chatrelay.transport import ChatEntry

VERIFY_PREFIX_LENGTH = 20


class SessionSource(Protocol):
    @property
    def session(self) -> ChannelSession: ...


class VerificationMethod(StrEnum):
    CHAT_VERIFICATION = "chat_verification"
    NORMAL_RESPONSE = "normal_response"
    NO_ERROR_ASSUMPTION = "no_error_assumption"
    SEND_NO_ERROR = "send_no_error"


@dataclass(frozen=True)
class SendJob:
    recipient_raw: str
    message_body: str


@dataclass(frozen=True)
class Sent:
    message_id: str
    formatted_recipient: str
    verification_method: VerificationMethod

    status: ClassVar[str] = "sent"


@dataclass(frozen=True)
class NoChannel:
    reason: str
    formatted_recipient: str | None = None

    status: ClassVar[str] = "no_channel"


@dataclass(frozen=True)
class SendError:
    reason: str
    kind: str = "send_error"

    status: ClassVar[str] = "send_error"


SendResult = Sent | NoChannel | SendError


def result_to_dict(result: SendResult) -> dict[str, Any]:
    return {"status": result.status, **asdict(result)}


def _ack_id(ack: Any) -> str | None:
    if isinstance(ack, dict):
        value = ack.get("id")
    else:
        value = getattr(ack, "id", None)
    return str(value) if value is not None else None


def _error_reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class DeliveryPipeline:
    """Deliver one message per call and classify the outcome.

    `send` never raises for a job: every failure becomes a `SendError`, a
    recipient without a chat account becomes `NoChannel`. Acknowledgments from
    the transport can be silent on success, so a silent send without errors is
    reported as `Sent` and logged for audit.
    """

    def __init__(
        self,
        sessions: SessionSource,
        settings: Settings,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions = sessions
        self._settings = settings
        self._sleep = sleep
        self._clock = clock

    async def send(self, job: SendJob) -> SendResult:
        logger.info("delivery.start recipient={}", job.recipient_raw)
        try:
            result = await self._deliver(job)
        except asyncio.CancelledError:
            raise
        except ValidationError as exc:
            logger.warning("delivery.invalid_recipient recipient={} error={}", job.recipient_raw, exc)
            return SendError(reason=str(exc), kind="validation")
        except AuthenticationError as exc:
            logger.error("delivery.auth_failed recipient={} error={}", job.recipient_raw, exc)
            return SendError(reason=str(exc), kind="authentication")
        except TransientTransportError as exc:
            logger.error("delivery.transport_error recipient={} error={}", job.recipient_raw, exc)
            return SendError(reason=str(exc), kind="transient")
        except Exception as exc:
            logger.exception("delivery.unexpected_error recipient={}", job.recipient_raw)
            return SendError(reason=_error_reason(exc), kind="unexpected")

        logger.info("delivery.done recipient={} status={}", job.recipient_raw, result.status)
        return result

    async def resolve_chat(self, formatted: str) -> str | None:
        """Look up the chat id for a normalized number; None when it has no account."""
        attempts = max(1, self._settings.validation_attempts)
        for attempt in range(1, attempts + 1):
            transport = self._sessions.session.transport
            try:
                return await asyncio.wait_for(
                    transport.get_number_id(formatted), timeout=self._settings.validation_timeout
                )
            except Exception as exc:
                reason = "timeout" if isinstance(exc, TimeoutError) else _error_reason(exc)
                logger.warning(
                    "delivery.reachability.failed recipient={} attempt={}/{} error={}",
                    formatted,
                    attempt,
                    attempts,
                    reason,
                )
                if attempt >= attempts:
                    raise TransientTransportError(
                        f"reachability check failed after {attempts} attempts: {reason}"
                    ) from exc
            await self._sleep(self._settings.validation_backoff)
            await self._ensure_stable()
        return None

    async def _deliver(self, job: SendJob) -> SendResult:
        await self._ensure_stable()
        formatted = normalize_recipient(job.recipient_raw)

        chat_id = await self.resolve_chat(formatted)
        if chat_id is None:
            logger.warning("delivery.no_channel recipient={}", formatted)
            return NoChannel(reason="number is not registered on the chat channel", formatted_recipient=formatted)

        await self._sleep(self._settings.send_settle_delay)
        return await self._send_and_verify(chat_id, formatted, job.message_body)

    async def _ensure_stable(self) -> None:
        await self._sessions.session.ensure_stable()

    async def _send_and_verify(self, chat_id: str, formatted: str, text: str) -> SendResult:
        transport = self._sessions.session.transport
        started_at = self._clock()
        ack: Any = None
        send_error: str | None = None
        error_kind = "send_error"
        try:
            ack = await asyncio.wait_for(transport.send_message(chat_id, text), timeout=self._settings.send_timeout)
        except TimeoutError:
            send_error = f"send timed out after {self._settings.send_timeout:g}s"
            error_kind = "timeout"
        except Exception as exc:
            send_error = _error_reason(exc)
        if send_error is not None:
            logger.error("delivery.send.error chat_id={} error={}", chat_id, send_error)

        await self._sleep(self._settings.verification_grace)
        entry: ChatEntry | None = None
        verify_failed = False
        try:
            entry = await transport.get_last_message(chat_id)
        except Exception as exc:
            verify_failed = True
            logger.warning("delivery.verify.error chat_id={} error={}", chat_id, exc)

        if entry is not None and self._matches(entry, text, started_at):
            logger.info("delivery.verified chat_id={} method={}", chat_id, VerificationMethod.CHAT_VERIFICATION)
            return Sent(
                message_id=entry.id or "verified",
                formatted_recipient=formatted,
                verification_method=VerificationMethod.CHAT_VERIFICATION,
            )

        if send_error is not None:
            return SendError(reason=send_error, kind=error_kind)

        if ack is not None:
            return Sent(
                message_id=_ack_id(ack) or "normal_response",
                formatted_recipient=formatted,
                verification_method=VerificationMethod.NORMAL_RESPONSE,
            )

        method = VerificationMethod.SEND_NO_ERROR if verify_failed else VerificationMethod.NO_ERROR_ASSUMPTION
        logger.warning(
            "delivery.ambiguous audit=true chat_id={} method={} detail=no acknowledgment and no error, assuming sent",
            chat_id,
            method,
        )
        return Sent(
            message_id="unverified_success" if verify_failed else "assumed_success",
            formatted_recipient=formatted,
            verification_method=method,
        )

    def _matches(self, entry: ChatEntry, text: str, started_at: float) -> bool:
        probe = text.split("\n", 1)[0][:VERIFY_PREFIX_LENGTH]
        if not entry.body or probe not in entry.body:
            return False
        return entry.timestamp >= started_at - self._settings.verification_tolerance
