from __future__ import annotations

import pytest

from chatrelay.config import load_settings
from chatrelay.errors import ConfigurationError
from chatrelay.transport import InboundMessage, load_transport_factory


def test_load_transport_factory_resolves_entrypoint() -> None:
    factory = load_transport_factory("conftest:FakeTransport")

    assert factory.__name__ == "FakeTransport"


@pytest.mark.parametrize("entrypoint", [None, "", "no_colon", "missing_module_xyz:factory", "conftest:nothing_here"])
def test_load_transport_factory_rejects_bad_entrypoints(entrypoint: str | None) -> None:
    with pytest.raises(ConfigurationError):
        load_transport_factory(entrypoint)


def test_inbound_message_kinds() -> None:
    assert InboundMessage(chat_id="123-456@g.us", body="").is_group
    assert InboundMessage(chat_id="status@broadcast", body="").is_broadcast
    assert not InboundMessage(chat_id="34612345678@c.us", body="").is_group


def test_load_settings_reads_env_and_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATRELAY_MESSAGE_DELAY", "15")
    monkeypatch.setenv("CHATRELAY_REPLY_DELAY", "45")

    settings = load_settings(reply_delay=5, transport=None)

    assert settings.message_delay == 15
    assert settings.reply_delay == 5
    assert settings.transport is None
    assert settings.reconnect_max_attempts == 5
