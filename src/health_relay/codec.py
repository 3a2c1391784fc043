"""Wire encoding for outbound health records and companion messages."""

import json
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .models import Reading, Sample, SampleKind
from .types import JSONObject


def encode_sample(sample: Sample) -> str:
    """Serialize a sample to the phone ``HealthData`` JSON record.

    Timestamps are sent as epoch seconds.
    """
    record: JSONObject = {
        "type": sample.kind.value,
        "value": sample.value,
        "unit": sample.unit,
        "timestamp": sample.timestamp.timestamp(),
        "deviceId": sample.device_id,
        "userId": sample.user_id,
    }
    return json.dumps(record, separators=(",", ":"))


class CompanionMessage(BaseModel):
    """Heart-rate message pushed from the wrist companion."""

    type: Literal["heart_rate"] = Field(description="Message type")
    value: float = Field(description="Heart rate in bpm")
    timestamp: float = Field(description="Epoch seconds of the reading")

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Heart rate must be positive, got {v}")
        return v

    def to_reading(self) -> Reading:
        return Reading(
            kind=SampleKind.HEART_RATE,
            value=self.value,
            timestamp=datetime.fromtimestamp(self.timestamp, tz=UTC),
        )


def build_companion_message(heart_rate: float, timestamp: datetime | None = None) -> JSONObject:
    """Build the companion heart-rate message shape."""
    ts = timestamp or datetime.now(UTC)
    return {
        "type": "heart_rate",
        "value": heart_rate,
        "timestamp": ts.timestamp(),
    }


def decode_companion_message(message: dict[str, Any]) -> CompanionMessage:
    """Validate a companion message.

    Raises:
        pydantic.ValidationError: If the message does not match the shape.
    """
    return CompanionMessage.model_validate(message)
