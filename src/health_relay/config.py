"""Configuration management using pydantic-settings."""

import threading

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class RelaySettings(BaseSettings):
    """Relay endpoint, identity and connection policy settings."""

    model_config = SettingsConfigDict(env_prefix="RELAY_")

    api_base_url: str = Field(
        default="http://localhost:8000", description="Base URL of the token-issuing API"
    )
    socket_url: str = Field(
        default="ws://localhost:8000/ws/health", description="Persistent socket endpoint"
    )
    token_path: str = Field(default="/api/devices/token", description="Token request path")
    user_id: str = Field(default="demo-user", description="User identity sent with every sample")
    device_id: str = Field(default="unknown", description="Device identifier")
    device_type: str = Field(default="ios_app", description="Device type for token requests")

    request_timeout: float = Field(default=10.0, description="Token request timeout in seconds")
    connect_timeout: float = Field(default=10.0, description="Socket open timeout in seconds")
    send_timeout: float = Field(default=5.0, description="Per-sample send timeout in seconds")
    token_ttl_seconds: int = Field(
        default=3600, description="Credential lifetime when the server omits expiresIn"
    )
    token_max_retries: int = Field(default=3, description="Token request attempts")
    token_retry_delay_seconds: float = Field(
        default=0.5, description="Base delay between token attempts"
    )

    reconnect_attempts: int = Field(default=5, description="Reconnect attempts per request")
    reconnect_delay_min: float = Field(default=1.0, description="Initial reconnect backoff")
    reconnect_delay_max: float = Field(default=30.0, description="Maximum reconnect backoff")
    mock_fallback: bool = Field(
        default=True, description="Fall back to local mock mode when the endpoint is unreachable"
    )

    queue_max_size: int = Field(default=1000, description="Delivery queue capacity")
    rate_window_seconds: float = Field(
        default=60.0, description="Window for the data points per minute rate"
    )

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Validate and normalize the API base URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"API base URL must start with http:// or https://, got '{v}'")
        return v.rstrip("/")

    @field_validator("socket_url")
    @classmethod
    def validate_socket_url(cls, v: str) -> str:
        """Validate the socket URL scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"Socket URL must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Validate user id is not empty."""
        if not v or not v.strip():
            raise ValueError("User id cannot be empty")
        return v.strip()

    @field_validator("request_timeout", "connect_timeout", "send_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got {v}")
        return v

    @field_validator("token_max_retries", "reconnect_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate attempt counts."""
        if v < 1:
            raise ValueError(f"Attempts must be at least 1, got {v}")
        return v

    @field_validator("queue_max_size")
    @classmethod
    def validate_queue_max_size(cls, v: int) -> int:
        """Validate queue capacity is reasonable."""
        if v < 1:
            raise ValueError(f"Queue size must be at least 1, got {v}")
        if v > 100_000:
            raise ValueError(f"Queue size too large (max 100000), got {v}")
        return v

    @model_validator(mode="after")
    def validate_reconnect_delays(self) -> "RelaySettings":
        """Validate the reconnect backoff range."""
        if self.reconnect_delay_min > self.reconnect_delay_max:
            raise ValueError(
                "reconnect_delay_min must be less than or equal to reconnect_delay_max"
            )
        return self


class TracingSettings(BaseSettings):
    """OpenTelemetry tracing settings."""

    model_config = SettingsConfigDict(env_prefix="TRACING_")

    enabled: bool = Field(default=False, description="Enable OTLP trace export")
    service_name: str = Field(default="health-relay", description="Service name resource")


class AppSettings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_prefix="APP_")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")
    metrics_enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    prometheus_port: int = Field(default=9090, description="Prometheus metrics port")
    watchdog_interval_sec: float = Field(
        default=30.0, description="Interval between internal health checks"
    )
    widget_refresh_minutes: int = Field(
        default=15, description="Widget snapshot refresh interval in minutes"
    )
    auto_start_monitoring: bool = Field(
        default=True, description="Start streaming as soon as the service is connected"
    )
    auto_reconnect: bool = Field(
        default=False, description="Let the watchdog re-establish a dropped connection"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        normalized = v.upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        return normalized

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        normalized = v.lower()
        if normalized not in ("json", "console"):
            raise ValueError(f"Invalid log format '{v}'. Must be 'json' or 'console'")
        return normalized

    @field_validator("prometheus_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator("widget_refresh_minutes")
    @classmethod
    def validate_widget_refresh(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Widget refresh must be at least 1 minute, got {v}")
        return v


class Settings(BaseSettings):
    """Combined application settings."""

    relay: RelaySettings = Field(default_factory=RelaySettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    app: AppSettings = Field(default_factory=AppSettings)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            relay=RelaySettings(),
            tracing=TracingSettings(),
            app=AppSettings(),
        )


# Global settings instance with thread-safe initialization
_settings: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get or create the global settings instance.

    Thread-safe singleton pattern using double-checked locking.
    """
    global _settings
    if _settings is None:
        with _settings_lock:
            # Double-check after acquiring lock
            if _settings is None:
                _settings = Settings.load()
    return _settings
