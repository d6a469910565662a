from __future__ import annotations

import time

import pytest
from conftest import FakeTransport, StaticSessions

from chatrelay.bus import SessionBus
from chatrelay.config import Settings
from chatrelay.delivery import (
    DeliveryPipeline,
    NoChannel,
    SendError,
    SendJob,
    Sent,
    VerificationMethod,
    result_to_dict,
)
from chatrelay.session import ChannelSession
from chatrelay.transport import ChatEntry

TEXT = "Hola Juan, tu pedido ya está listo\nPuedes recogerlo mañana."


async def _pipeline(transport: FakeTransport, bus: SessionBus, settings: Settings) -> DeliveryPipeline:
    session = ChannelSession(transport, bus, settings)
    await session.initialize()
    return DeliveryPipeline(StaticSessions(session), settings)


@pytest.mark.asyncio
async def test_silent_send_is_assumed_sent(transport: FakeTransport, bus: SessionBus, settings: Settings) -> None:
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612 345 678", message_body=TEXT))

    assert isinstance(result, Sent)
    assert result.verification_method is VerificationMethod.NO_ERROR_ASSUMPTION
    assert result.message_id == "assumed_success"
    assert result.formatted_recipient == "34612345678"
    assert transport.lookups == ["34612345678"]
    assert transport.sent == [("34612345678@c.us", TEXT)]


@pytest.mark.asyncio
async def test_message_found_in_chat_is_verified(bus: SessionBus, settings: Settings) -> None:
    transport = FakeTransport(echo=True)
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, Sent)
    assert result.verification_method is VerificationMethod.CHAT_VERIFICATION
    assert result.message_id == "msg-1"


@pytest.mark.asyncio
async def test_acknowledged_send_uses_ack_id(bus: SessionBus, settings: Settings) -> None:
    transport = FakeTransport(ack={"id": "true_34612345678@c.us_ABC"})
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, Sent)
    assert result.verification_method is VerificationMethod.NORMAL_RESPONSE
    assert result.message_id == "true_34612345678@c.us_ABC"


@pytest.mark.asyncio
async def test_stale_chat_entry_does_not_verify(transport: FakeTransport, bus: SessionBus, settings: Settings) -> None:
    transport.last_message = ChatEntry(body=TEXT, timestamp=time.time() - 600, id="old")
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, Sent)
    assert result.verification_method is VerificationMethod.NO_ERROR_ASSUMPTION


@pytest.mark.asyncio
async def test_unreadable_chat_reports_send_no_error(
    transport: FakeTransport, bus: SessionBus, settings: Settings
) -> None:
    transport.last_message_error = RuntimeError("chat not loaded")
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, Sent)
    assert result.verification_method is VerificationMethod.SEND_NO_ERROR
    assert result.message_id == "unverified_success"


@pytest.mark.asyncio
async def test_unregistered_number_has_no_channel(transport: FakeTransport, bus: SessionBus, settings: Settings) -> None:
    transport.registered["34612345678"] = None
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, NoChannel)
    assert result.formatted_recipient == "34612345678"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_send_timeout_is_send_error(transport: FakeTransport, bus: SessionBus, settings: Settings) -> None:
    transport.send_delay = settings.send_timeout * 5
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, SendError)
    assert result.kind == "timeout"


@pytest.mark.asyncio
async def test_send_error_without_trace_in_chat(transport: FakeTransport, bus: SessionBus, settings: Settings) -> None:
    transport.send_error = RuntimeError("Evaluation failed")
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, SendError)
    assert result.kind == "send_error"
    assert "Evaluation failed" in result.reason
    assert result_to_dict(result)["status"] == "send_error"


@pytest.mark.asyncio
async def test_send_error_but_message_in_chat_is_sent(
    transport: FakeTransport, bus: SessionBus, settings: Settings
) -> None:
    transport.send_error = RuntimeError("Evaluation failed")
    transport.last_message = ChatEntry(body=TEXT, timestamp=time.time(), id="seen")
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, Sent)
    assert result.verification_method is VerificationMethod.CHAT_VERIFICATION
    assert result.message_id == "seen"


@pytest.mark.asyncio
async def test_invalid_recipient_fails_before_transport(
    transport: FakeTransport, bus: SessionBus, settings: Settings
) -> None:
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="123", message_body=TEXT))

    assert isinstance(result, SendError)
    assert result.kind == "validation"
    assert transport.lookups == []


@pytest.mark.asyncio
async def test_reachability_check_is_retried_then_fails(
    transport: FakeTransport, bus: SessionBus, settings: Settings
) -> None:
    transport.lookup_error = RuntimeError("Protocol error")
    pipeline = await _pipeline(transport, bus, settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, SendError)
    assert result.kind == "transient"
    assert len(transport.lookups) == settings.validation_attempts


@pytest.mark.asyncio
async def test_auth_failure_is_reported_per_job(bus: SessionBus, settings: Settings) -> None:
    transport = FakeTransport(connect_event="auth_failure")
    pipeline = DeliveryPipeline(StaticSessions(ChannelSession(transport, bus, settings)), settings)

    result = await pipeline.send(SendJob(recipient_raw="612345678", message_body=TEXT))

    assert isinstance(result, SendError)
    assert result.kind == "authentication"
