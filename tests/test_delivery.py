"""Tests for the ordered delivery queue."""

import json

import pytest
import pytest_asyncio

from health_relay.connection import ConnectionManager
from health_relay.delivery import DeliveryQueue
from health_relay.models import Reading, Sample, SampleKind


def _sample(kind: SampleKind = SampleKind.HEART_RATE, value: float = 70.0) -> Sample:
    return Sample.from_reading(Reading(kind=kind, value=value), "device-abc", "user-123")


@pytest_asyncio.fixture
async def connection(relay_settings, transport_factory, credential):
    manager = ConnectionManager(relay_settings, transport_factory)
    await manager.connect(credential)
    yield manager
    await manager.disconnect()


class TestDeliveryQueue:
    @pytest.mark.asyncio
    async def test_samples_sent_in_enqueue_order(self, connection, transport_factory):
        delivered = []
        queue = DeliveryQueue(connection, on_delivered=delivered.append)
        queue.start()
        samples = [_sample(value=v) for v in (60.0, 61.0, 62.0)]

        for sample in samples:
            assert queue.enqueue(sample)
        await queue.drain(timeout=1.0)

        values = [json.loads(m)["value"] for m in transport_factory.last.sent]
        assert values == [60.0, 61.0, 62.0]
        assert delivered == samples
        assert queue.get_status()["delivered"] == 3
        await queue.stop()

    @pytest.mark.asyncio
    async def test_duplicate_sample_is_sent_once(self, connection, transport_factory):
        queue = DeliveryQueue(connection)
        queue.start()
        sample = _sample()

        assert queue.enqueue(sample) is True
        assert queue.enqueue(sample) is False
        await queue.drain(timeout=1.0)
        assert queue.enqueue(sample) is False
        await queue.drain(timeout=1.0)

        assert len(transport_factory.last.sent) == 1
        assert queue.get_status()["dropped"] == 2
        await queue.stop()

    @pytest.mark.asyncio
    async def test_failed_send_is_not_retried(self, relay_settings, transport_factory, credential):
        transport_factory.fail_send = True
        connection = ConnectionManager(relay_settings, transport_factory)
        await connection.connect(credential)
        failures = []
        queue = DeliveryQueue(connection, on_failed=lambda s, e: failures.append((s, e)))
        queue.start()
        sample = _sample()

        queue.enqueue(sample)
        await queue.drain(timeout=1.0)

        assert len(failures) == 1
        assert failures[0][0] is sample
        assert queue.enqueue(sample) is False
        status = queue.get_status()
        assert status["failed"] == 1
        assert status["delivered"] == 0
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_discards_pending_samples(self, connection, transport_factory):
        queue = DeliveryQueue(connection)
        queue.start()
        queue.enqueue(_sample(value=60.0))
        queue.enqueue(_sample(value=61.0))

        await queue.stop()

        assert transport_factory.last.sent == []
        status = queue.get_status()
        assert status["running"] is False
        assert status["size"] == 0
        assert status["dropped"] == 2

    @pytest.mark.asyncio
    async def test_enqueue_after_stop_is_dropped(self, connection):
        queue = DeliveryQueue(connection)
        queue.start()
        await queue.stop()

        assert queue.enqueue(_sample()) is False
        assert queue.get_status()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_put_waits_for_room(self, connection, transport_factory):
        queue = DeliveryQueue(connection, max_size=2)
        queue.start()

        for value in range(10):
            assert await queue.put(_sample(value=float(value))) is True
        await queue.drain(timeout=1.0)

        values = [json.loads(m)["value"] for m in transport_factory.last.sent]
        assert values == [float(v) for v in range(10)]
        assert queue.get_status()["dropped"] == 0
        await queue.stop()

    @pytest.mark.asyncio
    async def test_put_rejects_duplicates_and_stopped(self, connection):
        queue = DeliveryQueue(connection)
        sample = _sample()

        assert await queue.put(sample) is False
        queue.start()
        assert await queue.put(sample) is True
        assert await queue.put(sample) is False
        assert queue.get_status()["dropped"] == 2
        await queue.stop()

    @pytest.mark.asyncio
    async def test_full_queue_drops(self, connection):
        queue = DeliveryQueue(connection, max_size=1)
        queue.start()

        assert queue.enqueue(_sample(value=60.0)) is True
        assert queue.enqueue(_sample(value=61.0)) is False
        await queue.stop()
