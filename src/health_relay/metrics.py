"""Prometheus metrics definitions for the health relay."""

from prometheus_client import Counter, Gauge, Histogram, Info

# -- Service info --
SERVICE_INFO = Info("health_relay", "Health relay service info")

# -- Samples --
SAMPLES_SENT = Counter(
    "health_relay_samples_sent_total",
    "Total samples delivered to the relay connection",
    ["kind"],
)
SAMPLES_FAILED = Counter(
    "health_relay_samples_failed_total",
    "Total samples whose delivery failed",
    ["reason"],
)
SAMPLES_DROPPED = Counter(
    "health_relay_samples_dropped_total",
    "Total samples dropped before delivery",
    ["reason"],
)
SEND_DURATION = Histogram(
    "health_relay_send_duration_seconds",
    "Per-sample send latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# -- Delivery queue --
QUEUE_DEPTH = Gauge(
    "health_relay_queue_depth",
    "Current delivery queue depth",
)

# -- Token requests --
TOKEN_REQUESTS = Counter(
    "health_relay_token_requests_total",
    "Total token requests",
    ["status"],
)

# -- Connection --
CONNECTION_STATE = Gauge(
    "health_relay_connection_state",
    "Connection state (0=disconnected, 1=connecting, 2=connected, 3=mock)",
)
CONNECTION_LATENCY = Gauge(
    "health_relay_connection_latency_seconds",
    "Last measured ping round trip",
)
RECONNECTS = Counter(
    "health_relay_reconnects_total",
    "Total successful reconnects after the first connection",
)
CONNECTION_DROPS = Counter(
    "health_relay_connection_drops_total",
    "Total transport drops",
)

# -- Circuit breakers --
CIRCUIT_BREAKER_STATE = Gauge(
    "health_relay_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["name"],
)
CIRCUIT_BREAKER_TRIPS = Gauge(
    "health_relay_circuit_breaker_trips_total",
    "Total circuit breaker trips",
    ["name"],
)
