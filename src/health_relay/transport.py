"""Socket transports carrying encoded records to the relay endpoint."""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ConnectionFailedError, DeliveryError

logger = structlog.get_logger(__name__)

# Frames kept by the mock transport for inspection
MOCK_SENT_HISTORY = 1000


class Transport(ABC):
    """One bidirectional text-frame connection."""

    is_mock = False

    @abstractmethod
    async def open(self, url: str, token: str, timeout: float) -> None:
        """Open the connection, authenticating with ``token``.

        Raises:
            ConnectionFailedError: If the connection cannot be opened.
        """

    @abstractmethod
    async def send(self, message: str) -> None:
        """Write one text frame.

        Raises:
            DeliveryError: If the write fails.
        """

    @abstractmethod
    async def ping(self, timeout: float) -> float:
        """Return the round-trip time of a ping in seconds."""

    @abstractmethod
    def messages(self) -> AsyncIterator[str]:
        """Iterate inbound frames until the connection closes."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""


class WebSocketTransport(Transport):
    """Transport over a WebSocket using a bearer token header."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    async def open(self, url: str, token: str, timeout: float) -> None:
        try:
            self._ws = await asyncio.wait_for(
                connect(url, additional_headers={"Authorization": f"Bearer {token}"}),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise ConnectionFailedError(f"Connection to {url} timed out") from e
        except (OSError, WebSocketException) as e:
            raise ConnectionFailedError(f"Connection to {url} failed: {e}") from e

    async def send(self, message: str) -> None:
        if self._ws is None:
            raise DeliveryError("Transport is not open")
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise DeliveryError(f"Connection closed: {e}") from e

    async def ping(self, timeout: float) -> float:
        if self._ws is None:
            raise ConnectionFailedError("Transport is not open")
        started = time.monotonic()
        try:
            pong_waiter = await self._ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=timeout)
        except (TimeoutError, ConnectionClosed) as e:
            raise ConnectionFailedError(f"Ping failed: {e}") from e
        return time.monotonic() - started

    async def messages(self) -> AsyncIterator[str]:
        if self._ws is None:
            return
        async for frame in self._ws:
            yield frame if isinstance(frame, str) else frame.decode("utf-8", "replace")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class MockTransport(Transport):
    """Local stand-in used when no live endpoint is reachable.

    The most recent sent frames are kept in ``sent`` for inspection.
    """

    is_mock = True

    def __init__(self) -> None:
        self.sent: deque[str] = deque(maxlen=MOCK_SENT_HISTORY)
        self._closed = asyncio.Event()

    async def open(self, url: str, token: str, timeout: float) -> None:
        self._closed.clear()
        logger.info("mock_transport_opened", url=url)

    async def send(self, message: str) -> None:
        if self._closed.is_set():
            raise DeliveryError("Mock transport is closed")
        self.sent.append(message)
        logger.debug("mock_transport_sent", size=len(message))

    async def ping(self, timeout: float) -> float:
        return 0.0

    async def messages(self) -> AsyncIterator[str]:
        await self._closed.wait()
        return
        yield  # pragma: no cover

    async def close(self) -> None:
        self._closed.set()
