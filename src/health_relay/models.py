"""Data models for samples, credentials and connection state."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum


class SampleKind(str, Enum):
    """Biometric metric kinds relayed by the pipeline."""

    HEART_RATE = "heart_rate"
    STEPS = "steps"
    ENERGY = "energy"
    DISTANCE = "distance"

    @property
    def unit(self) -> str:
        """Default unit for this kind."""
        return _UNITS[self]

    @property
    def label(self) -> str:
        """Short display label for this kind."""
        return _LABELS[self]


_UNITS = {
    SampleKind.HEART_RATE: "bpm",
    SampleKind.STEPS: "count",
    SampleKind.ENERGY: "kcal",
    SampleKind.DISTANCE: "m",
}

_LABELS = {
    SampleKind.HEART_RATE: "HR",
    SampleKind.STEPS: "Steps",
    SampleKind.ENERGY: "Energy",
    SampleKind.DISTANCE: "Distance",
}


@dataclass(frozen=True)
class Reading:
    """A raw observation emitted by a sensor bridge."""

    kind: SampleKind
    value: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class Sample:
    """One timestamped biometric reading ready for delivery.

    Samples are immutable and carry a unique ``sample_id`` so the delivery
    path can guarantee each one is sent at most once.
    """

    kind: SampleKind
    value: float
    unit: str
    timestamp: datetime
    device_id: str
    user_id: str
    sample_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_reading(cls, reading: Reading, device_id: str, user_id: str) -> "Sample":
        """Build a sample from a sensor reading and the device identity."""
        return cls(
            kind=reading.kind,
            value=reading.value,
            unit=reading.kind.unit,
            timestamp=reading.timestamp,
            device_id=device_id,
            user_id=user_id,
        )


@dataclass(frozen=True)
class Credential:
    """Short-lived token authorizing the persistent connection."""

    token: str
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None

    @classmethod
    def issue(cls, token: str, ttl_seconds: float | None) -> "Credential":
        """Create a credential issued now with an optional lifetime."""
        issued_at = datetime.now(UTC)
        expires_at = issued_at + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        return cls(token=token, issued_at=issued_at, expires_at=expires_at)

    @property
    def is_valid(self) -> bool:
        return bool(self.token and self.token.strip())

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at


class ConnectionState(str, Enum):
    """Transport status of the relay connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    MOCK = "mock"


@dataclass
class ConnectionQuality:
    """Latency and reconnect bookkeeping for display."""

    latency: float = 0.0
    reconnect_count: int = 0
