"""Read-side status derivation for display surfaces."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from .collector import HealthDataCollector
from .config import AppSettings, RelaySettings
from .connection import ConnectionManager
from .models import SampleKind
from .types import (
    ConnectionStatus,
    FreshnessEntry,
    PerformanceStats,
    WidgetSnapshot,
)

# Number of metrics shown in the last-updates list
FRESHNESS_ROWS = 3


def overall_status(is_connected: bool, is_monitoring_active: bool) -> str:
    if is_connected and is_monitoring_active:
        return "Active"
    if is_connected:
        return "Ready"
    return "Offline"


def status_color(is_connected: bool, is_monitoring_active: bool) -> str:
    if is_connected and is_monitoring_active:
        return "green"
    if is_connected:
        return "yellow"
    return "red"


def time_ago(moment: datetime, now: datetime | None = None) -> str:
    """Format elapsed time as ``Ns ago``, ``Nm ago`` or ``Nh ago``."""
    seconds = max(0, int(((now or datetime.now(UTC)) - moment).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


class StatusAggregator:
    """Combines connection state and collector counters into display values.

    Holds no state of its own; every accessor recomputes from its sources.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        collector: HealthDataCollector,
        relay_settings: RelaySettings,
        app_settings: AppSettings,
    ) -> None:
        self._connection = connection
        self._collector = collector
        self._relay_settings = relay_settings
        self._app_settings = app_settings

    @property
    def overall_status(self) -> str:
        return overall_status(
            self._connection.is_connected, self._collector.is_monitoring_active
        )

    @property
    def status_color(self) -> str:
        return status_color(
            self._connection.is_connected, self._collector.is_monitoring_active
        )

    def connection_status(self) -> ConnectionStatus:
        return {
            "state": self._connection.state.value,
            "status": self._connection.connection_status,
            "connected": self._connection.is_connected,
            "latency_ms": int(self._connection.quality.latency * 1000),
            "reconnects": self._connection.quality.reconnect_count,
            "error": self._connection.last_error,
        }

    def performance_stats(self, now: datetime | None = None) -> PerformanceStats:
        freshness = self._collector.health_data_freshness
        rows: list[FreshnessEntry] = [
            {"metric": key.replace("_", " ").title(), "updated": time_ago(freshness[key], now)}
            for key in sorted(freshness)[:FRESHNESS_ROWS]
        ]
        return {
            "total_sent": self._collector.total_data_points_sent,
            "rate": f"{self._collector.data_points_per_minute:.1f}/min",
            "reconnects": self._connection.quality.reconnect_count,
            "freshness": rows,
        }

    def widget_snapshot(self, now: datetime | None = None) -> WidgetSnapshot:
        """Snapshot for the home-screen widget timeline."""
        now = now or datetime.now(UTC)
        steps = self._collector.last_step_count
        last_update = self._collector.last_data_update
        return {
            "isConnected": self._connection.is_connected,
            "heartRate": self._collector.last_heart_rate,
            "stepCount": int(steps) if steps is not None else None,
            "lastUpdate": last_update.isoformat() if last_update else None,
            "nextRefresh": (
                now + timedelta(minutes=self._app_settings.widget_refresh_minutes)
            ).isoformat(),
        }

    def connection_check_message(self) -> str:
        state = "Connected" if self._connection.is_connected else "Disconnected"
        return f"Connection status: {state}"

    def debug_rows(self) -> list[tuple[str, str]]:
        rows = [
            ("User ID", self._relay_settings.user_id),
            ("API Base URL", self._relay_settings.api_base_url),
            ("Socket URL", self._relay_settings.socket_url),
            (
                "Health Data Access",
                "Authorized" if self._collector.is_authorized else "Not Authorized",
            ),
            (
                "Socket Mode",
                "Connected" if self._connection.is_connected else "Disconnected",
            ),
        ]
        if self._collector.last_error:
            rows.append(("Last Error", self._collector.last_error))
        if self._connection.last_error:
            rows.append(("Socket Error", self._connection.last_error))
        return rows

    def latest_heart_rate_text(self) -> str | None:
        value = self._collector.last_heart_rate
        if value is None:
            return None
        return f"{value:.0f} {SampleKind.HEART_RATE.unit}"
