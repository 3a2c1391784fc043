"""Main entry point for the health relay service."""

import asyncio
import signal
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from prometheus_client import start_http_server as start_metrics_server
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from . import __version__
from .collector import HealthDataCollector
from .companion import CompanionBridge
from .config import Settings, get_settings
from .connection import ConnectionManager
from .errors import AuthorizationError, ConnectionFailedError, DeliveryError, RelayError
from .logging import setup_logging
from .metrics import CIRCUIT_BREAKER_STATE, CIRCUIT_BREAKER_TRIPS, SERVICE_INFO
from .models import Sample, SampleKind
from .sources import InMemorySampleSource, SampleSource
from .status import StatusAggregator
from .token_provider import TokenProvider
from .tracing import setup_tracing, shutdown_tracing
from .transport import Transport, WebSocketTransport
from .types import HealthCheckStatus, ServiceStatusSnapshot

logger = structlog.get_logger(__name__)

# Heart rate used by the manual test send
TEST_HEART_RATE = 75.0


class RelayService:
    """Constructs and owns every relay collaborator for one session.

    Actions mirror the controls of the mobile app: connect, send test data,
    start and stop monitoring, refresh, and the voice-shortcut actions.
    Actions never raise; outcomes are reported through ``send_status`` and
    ``last_alert``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        source: SampleSource | None = None,
        token_provider: TokenProvider | None = None,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
    ) -> None:
        """Initialize the relay service.

        Args:
            settings: Settings to use; loaded from the environment if omitted.
            source: Platform sample source; an in-memory source if omitted.
            token_provider: Token provider; built from settings if omitted.
            transport_factory: Transport constructor for the connection.
        """
        self._settings = settings or get_settings()
        relay = self._settings.relay
        self.source = source or InMemorySampleSource()
        self.token_provider = token_provider or TokenProvider(relay)
        self.connection = ConnectionManager(relay, transport_factory)
        self.collector = HealthDataCollector(self.source, relay)
        self.status = StatusAggregator(
            self.connection, self.collector, relay, self._settings.app
        )
        self.companion = (
            CompanionBridge(self.source)
            if isinstance(self.source, InMemorySampleSource)
            else None
        )
        self.send_status = "Ready"
        self.last_alert: str | None = None
        self._monitoring_requested = False
        self._shutdown_event = asyncio.Event()
        self._watchdog_task: asyncio.Task | None = None
        self._tracer_provider = None

    def _alert(self, message: str) -> None:
        self.last_alert = message
        logger.info("user_alert", message=message)

    async def start(self) -> None:
        """Start the relay service."""
        self._tracer_provider = setup_tracing(self._settings.tracing)
        logger.info("service_starting", version=__version__)
        SERVICE_INFO.info({"version": __version__})

        if self._settings.app.metrics_enabled:
            start_metrics_server(port=self._settings.app.prometheus_port)
            logger.info("prometheus_metrics_started", port=self._settings.app.prometheus_port)

        await self.collector.request_authorization()
        await self.connect()
        if self._settings.app.auto_start_monitoring and self.connection.is_connected:
            await self.start_monitoring()

        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info("service_started", status=self.status.overall_status)

    async def stop(self) -> None:
        """Stop the relay service gracefully."""
        logger.info("service_stopping")
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        await self.collector.stop_monitoring()
        await self.connection.disconnect()
        shutdown_tracing(self._tracer_provider)
        logger.info(
            "service_stopped",
            total_data_points_sent=self.collector.total_data_points_sent,
        )

    # -- actions --

    async def connect(self) -> bool:
        """Obtain a credential and open the relay connection."""
        self.send_status = "Connecting..."
        relay = self._settings.relay
        credential = await self.token_provider.get_device_token(
            relay.user_id, relay.device_type
        )
        if credential is None:
            self.send_status = "Connection failed"
            self._alert("Failed to get device token")
            return False

        if not await self.connection.connect(credential):
            self.send_status = "Connection failed"
            self._alert(f"Connection failed: {self.connection.last_error}")
            return False

        self.collector.bind_connection(self.connection)
        self.send_status = "Connected"
        return True

    async def ensure_connected(self) -> bool:
        """Connect if needed, retrying with exponential backoff and jitter."""
        if self.connection.is_connected:
            return True

        relay = self._settings.relay
        try:
            async for attempt_state in AsyncRetrying(
                stop=stop_after_attempt(relay.reconnect_attempts),
                wait=wait_exponential_jitter(
                    initial=relay.reconnect_delay_min,
                    max=relay.reconnect_delay_max,
                    jitter=relay.reconnect_delay_min,
                ),
                retry=retry_if_exception_type(ConnectionFailedError),
                reraise=True,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    if not await self.connect():
                        logger.warning("reconnect_attempt_failed", attempt=attempt)
                        raise ConnectionFailedError(
                            self.connection.last_error or "Failed to get device token"
                        )
        except ConnectionFailedError as e:
            logger.error("reconnect_exhausted", attempts=relay.reconnect_attempts, error=str(e))
            return False
        return True

    async def send_test_data(self) -> bool:
        """Send one heart-rate sample of 75 bpm."""
        self.send_status = "Sending..."
        relay = self._settings.relay
        sample = Sample(
            kind=SampleKind.HEART_RATE,
            value=TEST_HEART_RATE,
            unit=SampleKind.HEART_RATE.unit,
            timestamp=datetime.now(UTC),
            device_id=relay.device_id,
            user_id=relay.user_id,
        )
        try:
            await self.connection.send_health_data(sample)
        except DeliveryError as e:
            self.send_status = "Send failed"
            self._alert(f"Failed to send test data: {e}")
            return False

        self.send_status = "Sent successfully"
        mode = " (Mock mode)" if "Mock" in self.connection.connection_status else ""
        self._alert(f"Test data sent successfully: Heart Rate 75 BPM{mode}")
        return True

    async def start_monitoring(self) -> bool:
        """Ensure a connection, then stream live readings."""
        if not await self.ensure_connected():
            self.send_status = "Connection failed"
            return False
        try:
            await self.collector.start_live_data_streaming(self.connection)
        except AuthorizationError as e:
            self.send_status = "Not authorized"
            self._alert(str(e))
            return False

        self._monitoring_requested = True
        self.send_status = "Monitoring active"
        self._alert("Health monitoring started successfully")
        return True

    async def stop_monitoring(self) -> None:
        self._monitoring_requested = False
        await self.collector.stop_monitoring()
        self.send_status = "Ready"

    async def refresh_health_data(self) -> bool:
        """Explicitly resend the current value of every metric."""
        try:
            await self.collector.send_current_health_data()
        except RelayError as e:
            self._alert(f"Failed to refresh health data: {e}")
            return False

        summary = self.collector.get_health_data_summary()
        self._alert(
            f"Health data refreshed: {summary}" if summary else "Health data refresh completed"
        )
        return True

    async def send_all_health_data(self) -> str:
        """Voice-shortcut action; returns the spoken dialog."""
        sent = await self.collector.send_all_health_data()
        if sent:
            return "Health data sent successfully!"
        return "Health data could not be sent."

    def check_connection(self) -> str:
        """Voice-shortcut action; returns the spoken dialog."""
        return self.status.connection_check_message()

    # -- status --

    def status_snapshot(self) -> ServiceStatusSnapshot:
        return {
            "status": self.status.overall_status,
            "color": self.status.status_color,
            "send_status": self.send_status,
            "connection": self.status.connection_status(),
            "performance": self.status.performance_stats(),
        }

    async def health_check(self) -> HealthCheckStatus:
        """Get service health status.

        Returns:
            Dict with health status of all components.
        """
        result: HealthCheckStatus = {
            "service": "healthy" if self.connection.is_connected else "degraded",
            "connection": self.status.connection_status(),
            "monitoring": self.collector.is_monitoring_active,
            "authorized": self.collector.is_authorized,
            "token_circuit": self.token_provider.circuit_breaker.get_stats(),
        }
        queue_status = self.collector.queue_status()
        if queue_status:
            result["queue"] = queue_status
        return result

    async def _watchdog_loop(self) -> None:
        """Periodic internal health monitoring.

        Probes latency, exports the token circuit breaker state and, when
        enabled, re-establishes a dropped connection.
        """
        while True:
            try:
                await asyncio.sleep(self._settings.app.watchdog_interval_sec)

                if self.connection.is_connected:
                    await self.connection.measure_latency()
                elif self._settings.app.auto_reconnect and self._monitoring_requested:
                    logger.warning("watchdog_reconnecting", error=self.connection.last_error)
                    await self.start_monitoring()

                breaker = self.token_provider.circuit_breaker
                state = breaker.state
                CIRCUIT_BREAKER_STATE.labels(name=breaker.name).set(state.gauge_value)
                CIRCUIT_BREAKER_TRIPS.labels(name=breaker.name).set(
                    breaker.get_stats()["total_trips"]
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("watchdog_error", error=str(e))

    async def run_until_shutdown(self) -> None:
        """Run the service until shutdown signal received."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request service shutdown."""
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings.app)

    service = RelayService(settings)

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        service.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await service.start()
        await service.run_until_shutdown()
    except Exception as e:
        logger.exception("service_error", error=str(e))
        raise
    finally:
        await service.stop()


def run() -> None:
    """Entry point for the CLI."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
