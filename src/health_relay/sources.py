"""Sample sources bridging sensor callbacks into cancellable subscriptions."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from .errors import AuthorizationError
from .models import Reading, SampleKind

logger = structlog.get_logger(__name__)


class SampleSubscription:
    """Cancellable handle yielding readings in the order they were pushed.

    Iteration ends once the subscription is cancelled. Readings still
    buffered at cancel time are discarded, pushes after cancel are ignored,
    and a cancelled subscription never resumes.
    """

    def __init__(
        self,
        kinds: Iterable[SampleKind],
        on_cancel: Callable[[SampleSubscription], None] | None = None,
    ) -> None:
        self.kinds = frozenset(kinds)
        self._on_cancel = on_cancel
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Reading | None] = asyncio.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> int:
        """Readings pushed but not yet consumed."""
        return 0 if self._cancelled else self._queue.qsize()

    def push(self, reading: Reading) -> bool:
        """Deliver a reading from the event loop thread.

        Returns:
            True if the reading was accepted.
        """
        if self._cancelled or reading.kind not in self.kinds:
            return False
        self._queue.put_nowait(reading)
        return True

    def push_threadsafe(self, reading: Reading) -> None:
        """Deliver a reading from a background callback thread."""
        self._loop.call_soon_threadsafe(self.push, reading)

    def cancel(self) -> None:
        """Stop the subscription. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait(None)
        if self._on_cancel:
            self._on_cancel(self)

    def __aiter__(self) -> SampleSubscription:
        return self

    async def __anext__(self) -> Reading:
        if self._cancelled:
            raise StopAsyncIteration
        reading = await self._queue.get()
        if reading is None or self._cancelled:
            raise StopAsyncIteration
        return reading


class SampleSource(ABC):
    """Bridge to a platform health data store."""

    @abstractmethod
    async def authorize(self, kinds: Iterable[SampleKind]) -> bool:
        """Request read permission for ``kinds``."""

    @abstractmethod
    async def latest(self, kind: SampleKind) -> Reading | None:
        """Return the most recent reading of ``kind``, if any."""

    @abstractmethod
    def subscribe(self, kinds: Iterable[SampleKind]) -> SampleSubscription:
        """Open a live subscription for ``kinds``.

        Raises:
            AuthorizationError: If read permission has not been granted.
        """


class InMemorySampleSource(SampleSource):
    """Sample source fed programmatically, by replay or by a companion device."""

    def __init__(self, grant_authorization: bool = True) -> None:
        self._grant = grant_authorization
        self._authorized: set[SampleKind] = set()
        self._latest: dict[SampleKind, Reading] = {}
        self._subscriptions: list[SampleSubscription] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def authorize(self, kinds: Iterable[SampleKind]) -> bool:
        self._loop = asyncio.get_running_loop()
        if not self._grant:
            logger.warning("source_authorization_denied")
            return False
        self._authorized.update(kinds)
        return True

    def revoke_authorization(self) -> None:
        """Withdraw read permission, ending every open subscription."""
        self._grant = False
        self._authorized.clear()
        for subscription in list(self._subscriptions):
            subscription.cancel()
        logger.info("source_authorization_revoked")

    async def latest(self, kind: SampleKind) -> Reading | None:
        return self._latest.get(kind)

    def subscribe(self, kinds: Iterable[SampleKind]) -> SampleSubscription:
        kinds = set(kinds)
        missing = kinds - self._authorized
        if missing:
            raise AuthorizationError(
                f"Not authorized to read: {', '.join(sorted(k.value for k in missing))}"
            )
        self._loop = asyncio.get_running_loop()
        subscription = SampleSubscription(kinds, on_cancel=self._subscriptions.remove)
        self._subscriptions.append(subscription)
        return subscription

    def record(
        self, kind: SampleKind, value: float, timestamp: datetime | None = None
    ) -> Reading:
        """Record a new observation and fan it out to open subscriptions."""
        reading = (
            Reading(kind=kind, value=value, timestamp=timestamp)
            if timestamp
            else Reading(kind=kind, value=value)
        )
        self._latest[kind] = reading
        for subscription in list(self._subscriptions):
            subscription.push(reading)
        return reading

    def record_threadsafe(
        self, kind: SampleKind, value: float, timestamp: datetime | None = None
    ) -> None:
        """Record from a sensor callback thread by hopping onto the event loop."""
        if self._loop is None:
            raise RuntimeError("Sample source is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.record, kind, value, timestamp)
