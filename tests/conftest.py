"""Pytest configuration and fixtures."""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from health_relay.circuit_breaker import CircuitBreaker  # noqa: E402
from health_relay.config import AppSettings, RelaySettings, Settings, TracingSettings  # noqa: E402
from health_relay.errors import ConnectionFailedError, DeliveryError  # noqa: E402
from health_relay.models import Credential  # noqa: E402
from health_relay.transport import Transport  # noqa: E402


class FakeTransport(Transport):
    """In-memory transport recording sent frames."""

    def __init__(self, fail_open: bool = False, fail_send: bool = False) -> None:
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.sent: list[str] = []
        self.opened_with: tuple[str, str] | None = None
        self.closed = False
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()

    async def open(self, url: str, token: str, timeout: float) -> None:
        if self.fail_open:
            raise ConnectionFailedError("Connection refused")
        self.opened_with = (url, token)

    async def send(self, message: str) -> None:
        if self.fail_send:
            raise DeliveryError("write failed")
        self.sent.append(message)

    async def ping(self, timeout: float) -> float:
        return 0.012

    async def messages(self) -> AsyncIterator[str]:
        while True:
            item = await self._inbound.get()
            if item is None:
                return
            yield item

    def receive(self, message: str) -> None:
        self._inbound.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbound.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._inbound.put_nowait(None)


class FakeTransportFactory:
    """Callable transport factory keeping every transport it built."""

    def __init__(self) -> None:
        self.fail_open = False
        self.fail_send = False
        self.created: list[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(fail_open=self.fail_open, fail_send=self.fail_send)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class StubTokenProvider:
    """Token provider returning scripted results in order."""

    def __init__(self, results: list[Credential | None]) -> None:
        self._results = list(results)
        self.calls: list[tuple[str, str]] = []
        self.circuit_breaker = CircuitBreaker("token_api")

    async def get_device_token(self, user_id: str, device_type: str) -> Credential | None:
        self.calls.append((user_id, device_type))
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


@pytest.fixture
def relay_settings():
    """Relay settings with fast timings and no mock fallback."""
    return RelaySettings(
        api_base_url="http://relay.test",
        socket_url="ws://relay.test/ws/health",
        user_id="user-123",
        device_id="device-abc",
        send_timeout=1.0,
        connect_timeout=1.0,
        token_retry_delay_seconds=0.01,
        reconnect_attempts=3,
        reconnect_delay_min=0.01,
        reconnect_delay_max=0.02,
        mock_fallback=False,
    )


@pytest.fixture
def settings(relay_settings):
    """Combined settings for service tests."""
    return Settings(
        relay=relay_settings,
        tracing=TracingSettings(enabled=False),
        app=AppSettings(log_format="console", auto_start_monitoring=False),
    )


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def credential():
    return Credential.issue("token-xyz", ttl_seconds=3600)


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds."""

    async def _wait_until(predicate, timeout: float = 1.0) -> None:
        async def _poll() -> None:
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout=timeout)

    return _wait_until


@pytest.fixture
def stub_token_provider():
    """Build a token provider returning the given credentials in order."""
    return StubTokenProvider
