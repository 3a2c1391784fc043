"""Ordered, at-most-once delivery queue draining into the connection."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable

import structlog

from .connection import ConnectionManager
from .errors import DeliveryError
from .metrics import QUEUE_DEPTH, SAMPLES_DROPPED, SAMPLES_FAILED, SAMPLES_SENT
from .models import Sample
from .types import QueueStatus

logger = structlog.get_logger(__name__)

# Remembered sample ids; bounds memory over long streaming sessions
ATTEMPTED_HISTORY_SIZE = 10_000


class DeliveryQueue:
    """Buffers samples and sends them one at a time, in enqueue order.

    Every sample id is recorded before its send is attempted, so a sample is
    never written twice even if it is enqueued again or its send failed.
    Failed sends are reported through ``on_failed`` and not retried.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        max_size: int = 1000,
        on_delivered: Callable[[Sample], None] | None = None,
        on_failed: Callable[[Sample, DeliveryError], None] | None = None,
    ) -> None:
        self._connection = connection
        self._max_size = max_size
        self._on_delivered = on_delivered
        self._on_failed = on_failed
        self._queue: asyncio.Queue[Sample] = asyncio.Queue(maxsize=max_size)
        self._attempted: OrderedDict[str, None] = OrderedDict()
        self._queued_ids: set[str] = set()
        self._worker_task: asyncio.Task | None = None
        self._delivered = 0
        self._failed = 0
        self._dropped = 0

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._worker_task = asyncio.create_task(self._worker_loop())
        logger.debug("delivery_queue_started", max_size=self._max_size)

    def enqueue(self, sample: Sample) -> bool:
        """Buffer a sample for delivery without waiting; drops when full.

        Returns:
            True if the sample was queued, False if it was dropped.
        """
        if not self.is_running:
            self._drop(sample, "stopped")
            return False
        if sample.sample_id in self._attempted or sample.sample_id in self._queued_ids:
            self._drop(sample, "duplicate")
            return False
        try:
            self._queue.put_nowait(sample)
        except asyncio.QueueFull:
            self._drop(sample, "queue_full")
            return False
        self._queued_ids.add(sample.sample_id)
        QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def put(self, sample: Sample) -> bool:
        """Buffer a sample, waiting for room while the queue is full.

        Returns:
            True if the sample was queued, False if it was dropped.
        """
        if not self.is_running:
            self._drop(sample, "stopped")
            return False
        if sample.sample_id in self._attempted or sample.sample_id in self._queued_ids:
            self._drop(sample, "duplicate")
            return False
        self._queued_ids.add(sample.sample_id)
        try:
            await self._queue.put(sample)
        except asyncio.CancelledError:
            self._queued_ids.discard(sample.sample_id)
            raise
        QUEUE_DEPTH.set(self._queue.qsize())
        return True

    def _drop(self, sample: Sample, reason: str) -> None:
        self._dropped += 1
        SAMPLES_DROPPED.labels(reason=reason).inc()
        logger.warning(
            "sample_dropped",
            reason=reason,
            kind=sample.kind.value,
            sample_id=sample.sample_id,
        )

    def _mark_attempted(self, sample_id: str) -> None:
        self._attempted[sample_id] = None
        while len(self._attempted) > ATTEMPTED_HISTORY_SIZE:
            self._attempted.popitem(last=False)

    async def _worker_loop(self) -> None:
        while True:
            try:
                sample = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                self._queued_ids.discard(sample.sample_id)
                if sample.sample_id in self._attempted:
                    self._drop(sample, "duplicate")
                    continue
                self._mark_attempted(sample.sample_id)
                try:
                    await self._connection.send_health_data(sample)
                except DeliveryError as e:
                    self._failed += 1
                    SAMPLES_FAILED.labels(reason="delivery_error").inc()
                    logger.warning(
                        "sample_delivery_failed",
                        kind=sample.kind.value,
                        sample_id=sample.sample_id,
                        error=str(e),
                    )
                    if self._on_failed:
                        self._on_failed(sample, e)
                    continue

                self._delivered += 1
                SAMPLES_SENT.labels(kind=sample.kind.value).inc()
                if self._on_delivered:
                    self._on_delivered(sample)
            except Exception as e:
                logger.exception("delivery_worker_error", error=str(e))
            finally:
                self._queue.task_done()
                QUEUE_DEPTH.set(self._queue.qsize())

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait until every queued sample has been attempted."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning("queue_drain_timeout", remaining=self._queue.qsize())

    async def stop(self) -> None:
        """Stop the worker and discard samples that were not yet attempted."""
        task, self._worker_task = self._worker_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        while not self._queue.empty():
            sample = self._queue.get_nowait()
            self._queue.task_done()
            self._queued_ids.discard(sample.sample_id)
            self._drop(sample, "stopped")
        QUEUE_DEPTH.set(0)

    def get_status(self) -> QueueStatus:
        return {
            "running": self.is_running,
            "size": self._queue.qsize(),
            "max_size": self._max_size,
            "delivered": self._delivered,
            "failed": self._failed,
            "dropped": self._dropped,
        }
