"""Exception taxonomy for the relay pipeline."""


class RelayError(Exception):
    """Base class for all relay pipeline failures."""


class AuthorizationError(RelayError):
    """Raised when read permission for health data has not been granted."""


class TokenError(RelayError):
    """Raised when a connection credential cannot be obtained."""


class ConnectionFailedError(RelayError):
    """Raised when the transport could not be opened or has dropped."""


class DeliveryError(RelayError):
    """Raised when a sample could not be written to the relay connection."""


class NoHealthDataError(RelayError):
    """Raised when no current value exists for any metric kind."""

    def __init__(self) -> None:
        super().__init__("No current health data available")
