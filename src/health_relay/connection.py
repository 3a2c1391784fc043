"""Connection manager owning the single logical relay connection."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog
from opentelemetry import trace
from opentelemetry.trace import SpanKind

from .codec import encode_sample
from .config import RelaySettings
from .errors import ConnectionFailedError, DeliveryError
from .metrics import (
    CONNECTION_DROPS,
    CONNECTION_LATENCY,
    CONNECTION_STATE,
    RECONNECTS,
    SEND_DURATION,
)
from .models import ConnectionQuality, ConnectionState, Credential, Sample
from .transport import MockTransport, Transport, WebSocketTransport

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

_STATE_GAUGE = {
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.CONNECTING: 1,
    ConnectionState.CONNECTED: 2,
    ConnectionState.MOCK: 3,
}

_STATUS_TEXT = {
    ConnectionState.DISCONNECTED: "Disconnected",
    ConnectionState.CONNECTING: "Connecting...",
    ConnectionState.CONNECTED: "Connected",
    ConnectionState.MOCK: "Connected (Mock mode)",
}

StateListener = Callable[[ConnectionState], None]


class ConnectionManager:
    """Owns the lifecycle of one persistent, authenticated relay connection.

    State is mutated only from the event loop that awaits this manager's
    coroutines. Observers read ``state``, ``is_connected``,
    ``connection_status``, ``last_error`` and ``quality``.

    Transport drops move the manager to ``disconnected`` with ``last_error``
    set. The manager never reconnects on its own; callers re-run
    :meth:`connect` with a fresh credential.
    """

    def __init__(
        self,
        settings: RelaySettings,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
    ) -> None:
        """Initialize the connection manager.

        Args:
            settings: Relay settings with socket URL, timeouts and mock policy.
            transport_factory: Builds a fresh transport for each connect.
        """
        self._settings = settings
        self._transport_factory = transport_factory
        self._transport: Transport | None = None
        self._credential: Credential | None = None
        self._reader_task: asyncio.Task | None = None
        self._state = ConnectionState.DISCONNECTED
        self._has_connected = False
        self._listeners: list[StateListener] = []
        self.last_error: str | None = None
        self.quality = ConnectionQuality()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.MOCK)

    @property
    def is_mock(self) -> bool:
        return self._state == ConnectionState.MOCK

    @property
    def connection_status(self) -> str:
        """Human readable connection status."""
        return _STATUS_TEXT[self._state]

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked on every state transition."""
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        CONNECTION_STATE.set(_STATE_GAUGE[state])
        logger.debug("connection_state_changed", previous=previous.value, state=state.value)
        for listener in self._listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error("connection_listener_error", error=str(e))

    def _fail(self, error: str) -> None:
        self.last_error = error
        self._credential = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.warning("connection_failed", error=error)

    async def connect(self, credential: Credential | None) -> bool:
        """Open the relay connection with ``credential``.

        Returns:
            True when connected (live or mock), False otherwise. Failures are
            reported through ``last_error``, never raised.
        """
        if credential is None or not credential.is_valid:
            self._fail("Invalid credential")
            return False
        if credential.is_expired():
            self._fail("Credential expired")
            return False

        await self._teardown()
        self._set_state(ConnectionState.CONNECTING)
        logger.info("connection_opening", url=self._settings.socket_url)

        transport = self._transport_factory()
        try:
            await transport.open(
                self._settings.socket_url,
                credential.token,
                self._settings.connect_timeout,
            )
        except ConnectionFailedError as e:
            if not self._settings.mock_fallback:
                self._fail(str(e))
                return False
            logger.warning("connection_mock_fallback", error=str(e))
            transport = MockTransport()
            await transport.open(self._settings.socket_url, credential.token, 0)
            self._activate(transport, credential, ConnectionState.MOCK)
            self.last_error = str(e)
            return True

        self._activate(transport, credential, ConnectionState.CONNECTED)
        self.last_error = None
        await self.measure_latency()
        logger.info("connection_established", url=self._settings.socket_url)
        return True

    def _activate(
        self, transport: Transport, credential: Credential, state: ConnectionState
    ) -> None:
        if self._has_connected:
            self.quality.reconnect_count += 1
            RECONNECTS.inc()
        self._has_connected = True
        self._transport = transport
        self._credential = credential
        self._set_state(state)
        self._reader_task = asyncio.create_task(self._read_loop(transport))

    async def disconnect(self) -> None:
        """Close the connection and discard the credential. Idempotent."""
        if self._transport is None and self._state == ConnectionState.DISCONNECTED:
            return
        await self._teardown()
        self._credential = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("connection_closed_gracefully")

    async def _teardown(self) -> None:
        """Stop the reader and close the current transport, if any."""
        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        if reader and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning("transport_close_error", error=str(e))

    async def _read_loop(self, transport: Transport) -> None:
        """Consume inbound frames; a finished loop means the transport dropped."""
        try:
            async for message in transport.messages():
                logger.debug("relay_message_received", size=len(message))
            reason = "Connection closed by server"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"Connection lost: {e}"

        if transport is self._transport:
            await self._handle_drop(reason)

    async def _handle_drop(self, reason: str) -> None:
        CONNECTION_DROPS.inc()
        logger.warning("connection_dropped", reason=reason)
        await self._teardown()
        self._fail(reason)

    async def measure_latency(self) -> float | None:
        """Ping the endpoint and record the round trip."""
        if self._transport is None:
            return None
        try:
            latency = await self._transport.ping(self._settings.send_timeout)
        except ConnectionFailedError as e:
            logger.warning("latency_probe_failed", error=str(e))
            return None
        self.quality.latency = latency
        CONNECTION_LATENCY.set(latency)
        return latency

    async def send_health_data(self, sample: Sample) -> None:
        """Serialize one sample and write it to the open transport.

        Raises:
            DeliveryError: If not connected or the write fails. A failed
                write drops the connection.
        """
        transport = self._transport
        if not self.is_connected or transport is None:
            raise DeliveryError("Not connected")

        message = encode_sample(sample)
        with tracer.start_as_current_span("relay.send", kind=SpanKind.PRODUCER) as span:
            span.set_attribute("relay.sample.kind", sample.kind.value)
            span.set_attribute("relay.mock", transport.is_mock)
            started = time.monotonic()
            try:
                await asyncio.wait_for(
                    transport.send(message), timeout=self._settings.send_timeout
                )
            except TimeoutError as e:
                if transport is self._transport:
                    await self._handle_drop("Send timed out")
                raise DeliveryError("Send timed out") from e
            except DeliveryError as e:
                # The reader may already have handled the drop of this transport
                if transport is self._transport:
                    await self._handle_drop(f"Send failed: {e}")
                raise
            SEND_DURATION.observe(time.monotonic() - started)

        logger.debug(
            "sample_sent",
            kind=sample.kind.value,
            sample_id=sample.sample_id,
            mock=transport.is_mock,
        )
