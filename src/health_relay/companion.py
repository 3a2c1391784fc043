"""Companion-device heart-rate messages bridged into the phone's sample source."""

from typing import Any

import structlog
from pydantic import ValidationError

from .codec import decode_companion_message
from .models import Reading
from .sources import InMemorySampleSource

logger = structlog.get_logger(__name__)


class CompanionBridge:
    """Receives companion messages and records them as heart-rate readings."""

    def __init__(self, source: InMemorySampleSource) -> None:
        self._source = source
        self.is_reachable = False
        self.received = 0
        self.rejected = 0

    def set_reachable(self, reachable: bool) -> None:
        """Track companion reachability reported by the messaging layer."""
        if reachable != self.is_reachable:
            logger.info("companion_reachability_changed", reachable=reachable)
        self.is_reachable = reachable

    def handle_message(self, message: dict[str, Any]) -> Reading | None:
        """Record a companion message into the sample source.

        Returns:
            The recorded reading, or None if the message was rejected or the
            companion is unreachable.
        """
        if not self.is_reachable:
            logger.debug("companion_message_ignored_unreachable")
            return None

        try:
            parsed = decode_companion_message(message)
        except ValidationError as e:
            self.rejected += 1
            logger.warning("companion_message_invalid", error=str(e))
            return None

        reading = parsed.to_reading()
        self._source.record(reading.kind, reading.value, reading.timestamp)
        self.received += 1
        logger.debug("companion_heart_rate_received", value=reading.value)
        return reading
