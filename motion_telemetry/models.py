"""Pydantic models for motion telemetry data structures."""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def compute_magnitude(x: float, y: float, z: float) -> float:
    """Euclidean norm of the three acceleration axes."""
    return math.hypot(x, y, z)


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
    )


class EventKind(str, Enum):
    """Kind of motion event emitted by the detector."""

    NORMAL = "normal"
    ANOMALY = "anomaly"


class VibrationLevel(str, Enum):
    """Coarse vibration label attached to stored records."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Vector3(CamelModel):
    """Tri-axial reading (acceleration or gyroscope)."""

    x: float = Field(strict=True, description="X axis")
    y: float = Field(strict=True, description="Y axis")
    z: float = Field(strict=True, description="Z axis")

    def norm(self) -> float:
        return compute_magnitude(self.x, self.y, self.z)


class Location(CamelModel):
    """Location fix in decimal degrees."""

    latitude: float = Field(default=0.0, description="Latitude in decimal degrees")
    longitude: float = Field(default=0.0, description="Longitude in decimal degrees")


class SensorSample(CamelModel):
    """Raw accelerometer sample produced by the sampler. Never persisted."""

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1, description="Device identifier")
    x: float
    y: float
    z: float
    captured_at: datetime = Field(default_factory=utcnow)
    gyroscope: Vector3 | None = Field(
        default=None,
        description="Gyroscope reading, carried through but never fused",
    )

    @property
    def magnitude(self) -> float:
        return compute_magnitude(self.x, self.y, self.z)


class MotionEvent(CamelModel):
    """Event emitted by the anomaly detector and owned by the dispatcher.

    ``magnitude`` is always derived from the axes; a ``magnitude`` passed to
    the constructor is ignored.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1)
    kind: EventKind
    x: float
    y: float
    z: float
    captured_at: datetime
    location: Location | None = None
    gyroscope: Vector3 | None = None
    event_id: str | None = Field(
        default=None,
        description="Stable identifier used for idempotent ingestion",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def magnitude(self) -> float:
        return compute_magnitude(self.x, self.y, self.z)

    @property
    def idempotency_key(self) -> str:
        return self.event_id or f"{self.device_id}:{self.captured_at.isoformat()}"

    def to_payload(self) -> dict[str, Any]:
        """Serialize into the ``POST /sensor-data`` body."""
        payload: dict[str, Any] = {
            "deviceId": self.device_id,
            "eventId": self.idempotency_key,
            "kind": self.kind.value,
            "acceleration": {"x": self.x, "y": self.y, "z": self.z},
            "magnitude": self.magnitude,
            "capturedAt": self.captured_at.isoformat(),
        }
        if self.gyroscope is not None:
            payload["gyroscope"] = self.gyroscope.model_dump()
        if self.location is not None:
            payload["location"] = self.location.model_dump()
        return payload


# Keys (wire alias and attribute name) that fall back to their default when null
_DEFAULTED_KEYS = (
    "kind",
    "activity",
    "vibrationLevel",
    "vibration_level",
    "location",
    "batteryLevel",
    "battery_level",
)


class SensorDataPayload(CamelModel):
    """Incoming ``POST /sensor-data`` body.

    Accepts both the nested ``acceleration`` shape and the flat legacy shape
    with ``x``/``y``/``z`` at the top level.
    """

    device_id: str = Field(min_length=1, description="Device identifier")
    event_id: str | None = Field(default=None, min_length=1)
    kind: EventKind = EventKind.NORMAL
    acceleration: Vector3 | None = None
    gyroscope: Vector3 | None = None
    magnitude: float | None = Field(default=None, ge=0, strict=True)
    activity: str = Field(default="unknown")
    vibration_level: VibrationLevel = VibrationLevel.LOW
    location: Location = Field(default_factory=Location)
    battery_level: float = Field(default=100.0, ge=0, le=100)
    captured_at: datetime | None = None
    received_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "acceleration" not in data and any(axis in data for axis in ("x", "y", "z")):
            data["acceleration"] = {axis: data.pop(axis, None) for axis in ("x", "y", "z")}
        for key in _DEFAULTED_KEYS:
            if key in data and data[key] is None:
                del data[key]
        return data

    @field_validator("vibration_level", "kind", mode="before")
    @classmethod
    def _lowercase_enum(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("captured_at", "received_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _require_motion(self) -> "SensorDataPayload":
        if self.acceleration is None and self.magnitude is None:
            raise ValueError("either acceleration {x, y, z} or magnitude is required")
        return self

    def resolved_magnitude(self) -> float:
        """Magnitude recomputed from the axes when present."""
        if self.acceleration is not None:
            return self.acceleration.norm()
        return float(self.magnitude)

    def idempotency_key(self) -> str | None:
        """``deviceId:eventId``, or ``deviceId:capturedAt`` without an eventId.

        An eventId already scoped to the device (the dispatcher's default
        ``deviceId:capturedAt``) is used as is.
        """
        if self.event_id:
            prefix = f"{self.device_id}:"
            if self.event_id.startswith(prefix):
                return self.event_id
            return f"{prefix}{self.event_id}"
        if self.captured_at is not None:
            return f"{self.device_id}:{self.captured_at.isoformat()}"
        return None


class TelemetryRecord(CamelModel):
    """Persisted form of a motion event. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    record_id: int
    idempotency_key: str | None = None
    device_id: str
    kind: EventKind = EventKind.NORMAL
    acceleration: Vector3 | None = None
    gyroscope: Vector3 | None = None
    magnitude: float = Field(ge=0)
    activity: str = "unknown"
    vibration_level: VibrationLevel = VibrationLevel.LOW
    battery_level: float = 100.0
    location: Location = Field(default_factory=Location)
    captured_at: datetime | None = None
    received_at: datetime


class WindowStats(CamelModel):
    """Aggregate over records whose receivedAt falls in [windowStart, windowEnd)."""

    device_id: str | None = None
    window_start: datetime
    window_end: datetime
    count: int = 0
    avg_magnitude: float = 0.0
    min_magnitude: float = 0.0
    max_magnitude: float = 0.0


class IngestResult(BaseModel):
    """Outcome of a successful ingestion."""

    record_id: int
    duplicate: bool = False


class DispatchResult(BaseModel):
    """Returned by ``Dispatcher.submit``; delivery itself happens later."""

    accepted: bool
    idempotency_key: str
    reason: str | None = None


class HealthCheck(BaseModel):
    """Health check response model."""

    status: str = Field(description="Service health status")
    version: str = Field(description="Service version")
    timestamp: datetime = Field(default_factory=utcnow)
    storage_connected: bool = Field(default=False)
