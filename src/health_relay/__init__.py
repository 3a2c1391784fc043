"""Biometric data relay.

Reads biometric samples from a platform health bridge and relays them over
a persistent, token-authenticated socket connection to a remote server,
tracking delivery and connection health for display surfaces.

Modules:
    config: Configuration management using pydantic-settings
    token_provider: Device token exchange over HTTP
    connection: Lifecycle of the persistent relay connection
    collector: Sensor readings to delivered samples
    delivery: Ordered, at-most-once delivery queue
    status: Display strings, widget snapshot and performance stats

Example:
    Run the relay service::

        $ health-relay

    Send one test heart-rate sample::

        $ health-relay-send-test
"""

__version__ = "0.1.0"

from .config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
