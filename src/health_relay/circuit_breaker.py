"""Circuit breaker guarding calls to the token-issuing API."""

import threading
import time
from enum import Enum

import structlog

from .types import JSONObject

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    @property
    def gauge_value(self) -> int:
        return {CircuitState.CLOSED: 0, CircuitState.OPEN: 1, CircuitState.HALF_OPEN: 2}[self]


class CircuitOpenError(Exception):
    """Raised when a call is attempted on an open circuit."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.breaker_name = name


class CircuitBreaker:
    """Consecutive-failure breaker (CLOSED -> OPEN -> HALF_OPEN -> CLOSED).

    Once ``failure_threshold`` consecutive failures are recorded the circuit
    opens and :meth:`guard` rejects calls until ``recovery_timeout`` seconds
    have passed. The first call after that is a probe: success closes the
    circuit, failure reopens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._lock = threading.RLock()
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._opened_at: float = 0
        self._total_trips = 0

    @property
    def state(self) -> CircuitState:
        """Current circuit state, accounting for recovery timeout."""
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and time.monotonic() - self._opened_at >= self._recovery_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                logger.info("circuit_half_open", name=self.name)
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def guard(self) -> None:
        """Fail fast when the circuit is open.

        Raises:
            CircuitOpenError: If calls are currently rejected.
        """
        if self.is_open:
            raise CircuitOpenError(self.name)

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("circuit_closed", name=self.name)
            self._failure_count = 0
            self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record a failed call. May trip the circuit open."""
        with self._lock:
            self._failure_count += 1
            probe_failed = self._state == CircuitState.HALF_OPEN
            if probe_failed or self._failure_count >= self._failure_threshold:
                if self._state != CircuitState.OPEN:
                    self._total_trips += 1
                    logger.warning(
                        "circuit_opened",
                        name=self.name,
                        failures=self._failure_count,
                        total_trips=self._total_trips,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()

    def get_stats(self) -> JSONObject:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self._failure_threshold,
                "total_trips": self._total_trips,
            }
