"""Health data collector turning sensor readings into delivered samples."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .config import RelaySettings
from .connection import ConnectionManager
from .delivery import DeliveryQueue
from .errors import AuthorizationError, DeliveryError, NoHealthDataError, RelayError
from .metrics import SAMPLES_FAILED, SAMPLES_SENT
from .models import Reading, Sample, SampleKind
from .sources import SampleSource, SampleSubscription
from .types import QueueStatus

logger = structlog.get_logger(__name__)

MONITORED_KINDS = (
    SampleKind.HEART_RATE,
    SampleKind.STEPS,
    SampleKind.ENERGY,
    SampleKind.DISTANCE,
)


class HealthDataCollector:
    """Bridges a sample source to the relay connection.

    Tracks the latest value per metric, per-metric freshness of the last
    successful delivery, and send counters for display.
    """

    def __init__(
        self,
        source: SampleSource,
        settings: RelaySettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the collector.

        Args:
            source: Platform bridge providing readings.
            settings: Relay settings (identity, queue size, rate window).
            clock: Monotonic clock used for the send rate window.
        """
        self._source = source
        self._settings = settings
        self._clock = clock
        self._connection: ConnectionManager | None = None
        self._subscription: SampleSubscription | None = None
        self._pump_task: asyncio.Task | None = None
        self._queue: DeliveryQueue | None = None
        self._pump_busy = False
        self._send_times: deque[float] = deque()
        self.last_values: dict[SampleKind, float] = {}
        self.health_data_freshness: dict[str, datetime] = {}
        self.last_data_update: datetime | None = None
        self.total_data_points_sent = 0
        self.is_authorized = False
        self.last_error: str | None = None

    # -- latest values --

    @property
    def last_heart_rate(self) -> float | None:
        return self.last_values.get(SampleKind.HEART_RATE)

    @last_heart_rate.setter
    def last_heart_rate(self, value: float | None) -> None:
        self._set_last(SampleKind.HEART_RATE, value)

    @property
    def last_step_count(self) -> float | None:
        return self.last_values.get(SampleKind.STEPS)

    @last_step_count.setter
    def last_step_count(self, value: float | None) -> None:
        self._set_last(SampleKind.STEPS, value)

    @property
    def last_active_energy(self) -> float | None:
        return self.last_values.get(SampleKind.ENERGY)

    @last_active_energy.setter
    def last_active_energy(self, value: float | None) -> None:
        self._set_last(SampleKind.ENERGY, value)

    @property
    def last_distance(self) -> float | None:
        return self.last_values.get(SampleKind.DISTANCE)

    @last_distance.setter
    def last_distance(self, value: float | None) -> None:
        self._set_last(SampleKind.DISTANCE, value)

    def _set_last(self, kind: SampleKind, value: float | None) -> None:
        if value is None:
            self.last_values.pop(kind, None)
        else:
            self.last_values[kind] = value

    # -- counters --

    @property
    def is_monitoring_active(self) -> bool:
        return self._subscription is not None and not self._subscription.cancelled

    @property
    def data_points_per_minute(self) -> float:
        """Successful sends per minute over the rate window."""
        self._trim_send_times()
        return len(self._send_times) * 60.0 / self._settings.rate_window_seconds

    def _trim_send_times(self) -> None:
        cutoff = self._clock() - self._settings.rate_window_seconds
        while self._send_times and self._send_times[0] < cutoff:
            self._send_times.popleft()

    def queue_status(self) -> QueueStatus | None:
        return self._queue.get_status() if self._queue else None

    # -- operations --

    def bind_connection(self, connection: ConnectionManager) -> None:
        """Set the connection used by one-shot sends."""
        self._connection = connection

    async def request_authorization(self) -> bool:
        """Ask the source for read permission on every monitored kind."""
        try:
            self.is_authorized = await self._source.authorize(MONITORED_KINDS)
        except Exception as e:
            self.is_authorized = False
            self.last_error = f"Authorization failed: {e}"
            logger.error("authorization_error", error=str(e))
            return False

        if self.is_authorized:
            logger.info("authorization_granted")
        else:
            self.last_error = "Health data access not authorized"
            logger.warning("authorization_denied")
        return self.is_authorized

    async def start_live_data_streaming(self, connection: ConnectionManager) -> None:
        """Subscribe to live readings and forward each one as a sample.

        Restarts with a fresh subscription if streaming is already active.

        Raises:
            AuthorizationError: If read permission has not been granted.
        """
        if not self.is_authorized:
            self.last_error = "Health data access not authorized"
            raise AuthorizationError(self.last_error)

        await self.stop_monitoring()
        self._connection = connection
        subscription = self._source.subscribe(MONITORED_KINDS)
        queue = DeliveryQueue(
            connection,
            max_size=self._settings.queue_max_size,
            on_delivered=self._record_delivery,
            on_failed=self._record_failure,
        )
        queue.start()
        self._subscription = subscription
        self._queue = queue
        self._pump_task = asyncio.create_task(self._pump(subscription, queue))
        logger.info("live_streaming_started", kinds=[k.value for k in MONITORED_KINDS])

    async def _pump(self, subscription: SampleSubscription, queue: DeliveryQueue) -> None:
        async for reading in subscription:
            self._pump_busy = True
            try:
                self._observe(reading)
                # Waits for room, so bursts larger than the queue are not dropped
                await queue.put(self._make_sample(reading))
            finally:
                self._pump_busy = False
        logger.debug("subscription_ended")

    async def flush(self, timeout: float = 10.0) -> None:
        """Wait until every reading received so far has been attempted."""
        subscription, queue = self._subscription, self._queue
        if subscription is None or queue is None:
            return

        async def _wait_pumped() -> None:
            while subscription.pending or self._pump_busy:
                await asyncio.sleep(0.01)

        try:
            await asyncio.wait_for(_wait_pumped(), timeout=timeout)
        except TimeoutError:
            logger.warning("subscription_flush_timeout", pending=subscription.pending)
        await queue.drain(timeout)

    def _observe(self, reading: Reading) -> None:
        self.last_values[reading.kind] = reading.value

    def _make_sample(self, reading: Reading) -> Sample:
        return Sample.from_reading(
            reading,
            device_id=self._settings.device_id,
            user_id=self._settings.user_id,
        )

    def _record_delivery(self, sample: Sample) -> None:
        now = datetime.now(UTC)
        self.total_data_points_sent += 1
        self._send_times.append(self._clock())
        self._trim_send_times()
        self.health_data_freshness[sample.kind.value] = now
        self.last_data_update = now

    def _record_failure(self, sample: Sample, error: DeliveryError) -> None:
        self.last_error = f"Failed to send {sample.kind.value}: {error}"

    async def stop_monitoring(self) -> None:
        """Cancel the live subscription and its delivery queue. Idempotent."""
        subscription, self._subscription = self._subscription, None
        pump, self._pump_task = self._pump_task, None
        queue, self._queue = self._queue, None

        if subscription is None and pump is None and queue is None:
            return
        if subscription:
            subscription.cancel()
        if pump:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        if queue:
            await queue.stop()
        logger.info("monitoring_stopped", total_sent=self.total_data_points_sent)

    async def send_current_health_data(self) -> int:
        """Pull the latest value of every kind and send each immediately.

        Returns:
            Number of samples sent.

        Raises:
            NoHealthDataError: If no current value exists for any kind.
            DeliveryError: If there is no connection or a send fails.
        """
        samples: list[Sample] = []
        for kind in MONITORED_KINDS:
            reading = await self._source.latest(kind)
            if reading is None and kind in self.last_values:
                reading = Reading(kind=kind, value=self.last_values[kind])
            if reading is None:
                continue
            self._observe(reading)
            samples.append(self._make_sample(reading))

        if not samples:
            self.last_error = "No current health data available"
            raise NoHealthDataError()

        connection = self._connection
        if connection is None:
            self.last_error = "Not connected"
            raise DeliveryError(self.last_error)

        for sample in samples:
            try:
                await connection.send_health_data(sample)
            except DeliveryError as e:
                SAMPLES_FAILED.labels(reason="delivery_error").inc()
                self._record_failure(sample, e)
                raise
            SAMPLES_SENT.labels(kind=sample.kind.value).inc()
            self._record_delivery(sample)

        logger.info("current_health_data_sent", count=len(samples))
        return len(samples)

    async def send_all_health_data(self) -> int:
        """Send every current value, reporting failure instead of raising.

        Returns:
            Number of samples sent; 0 on failure.
        """
        try:
            return await self.send_current_health_data()
        except RelayError as e:
            logger.warning("send_all_health_data_failed", error=str(e))
            return 0

    def get_health_data_summary(self) -> str:
        """Short summary of the latest known values, e.g. ``HR: 72 bpm, Steps: 8420``."""
        parts = []
        for kind in MONITORED_KINDS:
            value = self.last_values.get(kind)
            if value is None:
                continue
            if kind == SampleKind.HEART_RATE:
                parts.append(f"{kind.label}: {value:.0f} {kind.unit}")
            elif kind == SampleKind.STEPS:
                parts.append(f"{kind.label}: {int(value)}")
            else:
                parts.append(f"{kind.label}: {value:.1f} {kind.unit}")
        return ", ".join(parts)
