"""Tests for the circuit breaker."""

import threading
import time

import pytest

from health_relay.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


def test_circuit_breaker_opens_after_threshold():
    """Circuit opens after reaching the failure threshold."""
    breaker = CircuitBreaker("token_api", failure_threshold=2, recovery_timeout=5)

    breaker.record_failure()
    assert breaker.is_closed

    breaker.record_failure()

    assert breaker.is_open
    stats = breaker.get_stats()
    assert stats["state"] == CircuitState.OPEN.value
    assert stats["failure_count"] == 2
    assert stats["total_trips"] == 1


def test_guard_rejects_while_open():
    breaker = CircuitBreaker("token_api", failure_threshold=1, recovery_timeout=60)
    breaker.guard()

    breaker.record_failure()

    with pytest.raises(CircuitOpenError, match="token_api"):
        breaker.guard()


def test_circuit_breaker_half_open_after_timeout(monkeypatch):
    """Circuit transitions to half-open after recovery timeout."""
    current_time = 0.0

    def fake_monotonic():
        return current_time

    monkeypatch.setattr(time, "monotonic", fake_monotonic)

    breaker = CircuitBreaker("token_api", failure_threshold=1, recovery_timeout=5)
    breaker.record_failure()
    assert breaker.is_open

    current_time = 5.0
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.guard()

    breaker.record_success()
    assert breaker.is_closed
    assert breaker.get_stats()["failure_count"] == 0


def test_failed_probe_reopens(monkeypatch):
    current_time = 0.0
    monkeypatch.setattr(time, "monotonic", lambda: current_time)

    breaker = CircuitBreaker("token_api", failure_threshold=3, recovery_timeout=5)
    for _ in range(3):
        breaker.record_failure()
    current_time = 6.0
    assert breaker.state == CircuitState.HALF_OPEN

    breaker.record_failure()

    assert breaker.is_open
    assert breaker.get_stats()["total_trips"] == 2


def test_gauge_values():
    assert CircuitState.CLOSED.gauge_value == 0
    assert CircuitState.OPEN.gauge_value == 1
    assert CircuitState.HALF_OPEN.gauge_value == 2


def test_circuit_breaker_thread_safety():
    """Circuit breaker handles concurrent access without corruption."""
    breaker = CircuitBreaker("token_api", failure_threshold=3, recovery_timeout=60)
    errors: list[Exception] = []

    def hammer():
        try:
            for _ in range(200):
                breaker.record_failure()
                breaker.state  # noqa: B018
                breaker.get_stats()
                breaker.record_success()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=hammer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors, f"Thread-safety errors: {errors}"
    stats = breaker.get_stats()
    assert stats["state"] in ("closed", "open", "half_open")
