"""Tests for the relay connection manager."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from health_relay.connection import ConnectionManager
from health_relay.errors import DeliveryError
from health_relay.models import ConnectionState, Credential, Reading, Sample, SampleKind
from health_relay.transport import MOCK_SENT_HISTORY, MockTransport


def _sample(value: float = 72.0) -> Sample:
    return Sample.from_reading(
        Reading(kind=SampleKind.HEART_RATE, value=value),
        device_id="device-abc",
        user_id="user-123",
    )


@pytest.fixture
def manager(relay_settings, transport_factory):
    return ConnectionManager(relay_settings, transport_factory)


class TestConnect:
    def test_initial_state(self, manager):
        assert manager.state == ConnectionState.DISCONNECTED
        assert not manager.is_connected
        assert manager.connection_status == "Disconnected"
        assert manager.last_error is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credential", [None, Credential(token=""), Credential(token="  ")])
    async def test_invalid_credential_is_rejected(self, manager, transport_factory, credential):
        assert await manager.connect(credential) is False

        assert not manager.is_connected
        assert manager.last_error == "Invalid credential"
        assert transport_factory.created == []

    @pytest.mark.asyncio
    async def test_expired_credential_is_rejected(self, manager, transport_factory):
        expired = Credential(
            token="old",
            issued_at=datetime.now(UTC) - timedelta(hours=2),
            expires_at=datetime.now(UTC) - timedelta(hours=1),
        )

        assert await manager.connect(expired) is False
        assert manager.last_error == "Credential expired"
        assert transport_factory.created == []

    @pytest.mark.asyncio
    async def test_successful_connect(self, manager, transport_factory, credential):
        assert await manager.connect(credential) is True

        assert manager.state == ConnectionState.CONNECTED
        assert manager.is_connected
        assert manager.connection_status == "Connected"
        assert manager.last_error is None
        assert manager.quality.latency == pytest.approx(0.012)
        assert transport_factory.last.opened_with == ("ws://relay.test/ws/health", "token-xyz")
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_open_failure_without_fallback(self, manager, transport_factory, credential):
        transport_factory.fail_open = True

        assert await manager.connect(credential) is False

        assert manager.state == ConnectionState.DISCONNECTED
        assert "Connection refused" in manager.last_error

    @pytest.mark.asyncio
    async def test_open_failure_falls_back_to_mock(self, relay_settings, transport_factory, credential):
        settings = relay_settings.model_copy(update={"mock_fallback": True})
        manager = ConnectionManager(settings, transport_factory)
        transport_factory.fail_open = True

        assert await manager.connect(credential) is True

        assert manager.state == ConnectionState.MOCK
        assert manager.is_connected
        assert manager.is_mock
        assert "Mock" in manager.connection_status

        await manager.send_health_data(_sample())
        assert isinstance(manager._transport, MockTransport)
        assert len(manager._transport.sent) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_count_increments_after_first_connection(self, manager, credential):
        await manager.connect(credential)
        assert manager.quality.reconnect_count == 0

        await manager.connect(credential)
        assert manager.quality.reconnect_count == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_listeners_see_transitions(self, manager, credential):
        states = []
        manager.add_listener(states.append)

        await manager.connect(credential)
        await manager.disconnect()

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]


class TestSend:
    @pytest.mark.asyncio
    async def test_send_requires_connection(self, manager):
        with pytest.raises(DeliveryError, match="Not connected"):
            await manager.send_health_data(_sample())

    @pytest.mark.asyncio
    async def test_send_writes_one_record(self, manager, transport_factory, credential):
        await manager.connect(credential)

        await manager.send_health_data(_sample(81.0))

        sent = transport_factory.last.sent
        assert len(sent) == 1
        record = json.loads(sent[0])
        assert record["type"] == "heart_rate"
        assert record["value"] == 81.0
        assert record["userId"] == "user-123"
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_send_failure_drops_connection(self, manager, transport_factory, credential):
        transport_factory.fail_send = True
        await manager.connect(credential)

        with pytest.raises(DeliveryError):
            await manager.send_health_data(_sample())

        assert not manager.is_connected
        assert "Send failed" in manager.last_error
        assert transport_factory.last.closed


class TestDrops:
    @pytest.mark.asyncio
    async def test_server_close_transitions_to_disconnected(
        self, manager, transport_factory, credential, wait_until
    ):
        await manager.connect(credential)
        transport_factory.last.receive('{"ack": true}')
        transport_factory.last.drop()

        await wait_until(lambda: not manager.is_connected)

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.last_error == "Connection closed by server"

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, manager, transport_factory, credential):
        await manager.connect(credential)

        await manager.disconnect()
        await manager.disconnect()

        assert manager.state == ConnectionState.DISCONNECTED
        assert transport_factory.last.closed
        assert manager.last_error is None


class TestSendRacingClose:
    @pytest.mark.asyncio
    async def test_drop_counted_once(self, manager, transport_factory, credential):
        await manager.connect(credential)
        transport = transport_factory.last

        async def closing_send(message: str) -> None:
            transport.drop()
            await asyncio.sleep(0.05)
            raise DeliveryError("socket closed")

        transport.send = closing_send

        with patch("health_relay.connection.CONNECTION_DROPS") as drops:
            with pytest.raises(DeliveryError):
                await manager.send_health_data(_sample())

        drops.inc.assert_called_once()
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.last_error == "Connection closed by server"


@pytest.mark.asyncio
async def test_mock_transport_keeps_bounded_history():
    transport = MockTransport()
    await transport.open("ws://relay.test/ws/health", "token", 0)
    for i in range(MOCK_SENT_HISTORY + 5):
        await transport.send(str(i))

    assert len(transport.sent) == MOCK_SENT_HISTORY
    assert transport.sent[0] == "5"
