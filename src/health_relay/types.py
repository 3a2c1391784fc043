"""Shared type aliases and typed dictionaries."""

from __future__ import annotations

from typing import TypeAlias, TypedDict

JSONValue: TypeAlias = (
    str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
)
JSONObject: TypeAlias = dict[str, JSONValue]


class ConnectionStatus(TypedDict):
    """Connection card payload."""

    state: str
    status: str
    connected: bool
    latency_ms: int
    reconnects: int
    error: str | None


class FreshnessEntry(TypedDict):
    """One row of the last-updates list."""

    metric: str
    updated: str


class PerformanceStats(TypedDict):
    """Performance card payload."""

    total_sent: int
    rate: str
    reconnects: int
    freshness: list[FreshnessEntry]


class WidgetSnapshot(TypedDict):
    """Read-only snapshot consumed by the home-screen widget."""

    isConnected: bool
    heartRate: float | None
    stepCount: int | None
    lastUpdate: str | None
    nextRefresh: str


class QueueStatus(TypedDict):
    """Delivery queue status payload."""

    running: bool
    size: int
    max_size: int
    delivered: int
    failed: int
    dropped: int


class ServiceStatusSnapshot(TypedDict):
    """Service status snapshot payload."""

    status: str
    color: str
    send_status: str
    connection: ConnectionStatus
    performance: PerformanceStats


class HealthCheckStatus(TypedDict, total=False):
    """Service health check payload."""

    service: str
    connection: ConnectionStatus
    monitoring: bool
    authorized: bool
    queue: QueueStatus
    token_circuit: JSONObject
