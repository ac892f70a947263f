"""Debounced threshold detector for accelerometer samples."""

from datetime import datetime, timedelta
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from ..metrics import anomalies_detected
from ..models import EventKind, Location, MotionEvent, SensorSample
from .cooldown_state import CooldownStateStore

logger = structlog.get_logger(__name__)


class DetectorState(str, Enum):
    NORMAL = "normal"
    COOLDOWN = "cooldown"


class DetectorConfig(BaseModel):
    """Detector parameters. The cooldown duration has no default."""

    anomaly_threshold: float = Field(default=2.5, ge=0, description="g-equivalent units")
    cooldown_duration_ms: int = Field(ge=0)
    emit_normal_events: bool = False
    persist_cooldown_state: bool = False

    @property
    def cooldown(self) -> timedelta:
        return timedelta(milliseconds=self.cooldown_duration_ms)


class _DeviceState:
    __slots__ = ("state", "cooldown_until")

    def __init__(self) -> None:
        self.state = DetectorState.NORMAL
        self.cooldown_until: datetime | None = None


class AnomalyDetector:
    """Per-device NORMAL/COOLDOWN state machine.

    A sample whose magnitude is strictly above the threshold while the device
    is NORMAL produces an ANOMALY event and starts the cooldown. During the
    cooldown no anomaly is emitted; the device returns to NORMAL lazily on the
    first sample captured at or after ``cooldown_until``. Time is the
    sample's ``captured_at``, so each device runs on its own timeline.
    """

    def __init__(
        self,
        config: DetectorConfig,
        cooldown_store: CooldownStateStore | None = None,
    ) -> None:
        if config.persist_cooldown_state and cooldown_store is None:
            raise ValueError("persist_cooldown_state requires a cooldown store")
        self.config = config
        self._cooldown_store = cooldown_store if config.persist_cooldown_state else None
        self._devices: dict[str, _DeviceState] = {}

        if self._cooldown_store is not None:
            for device_id, until in self._cooldown_store.load().items():
                device = self._device(device_id)
                device.state = DetectorState.COOLDOWN
                device.cooldown_until = until
            logger.info("Restored cooldown state", devices=len(self._devices))

    def _device(self, device_id: str) -> _DeviceState:
        device = self._devices.get(device_id)
        if device is None:
            device = self._devices[device_id] = _DeviceState()
        return device

    def state_of(self, device_id: str) -> DetectorState:
        device = self._devices.get(device_id)
        return device.state if device else DetectorState.NORMAL

    def cooldown_until(self, device_id: str) -> datetime | None:
        device = self._devices.get(device_id)
        return device.cooldown_until if device else None

    def reset(self, device_id: str | None = None) -> None:
        """Forget state for one device, or for all devices."""
        if device_id is None:
            self._devices.clear()
        else:
            self._devices.pop(device_id, None)

    def process(
        self,
        sample: SensorSample,
        location: Location | None = None,
    ) -> MotionEvent | None:
        """Feed one sample; return at most one event."""
        device = self._device(sample.device_id)
        now = sample.captured_at

        if device.state is DetectorState.COOLDOWN and now >= device.cooldown_until:
            device.state = DetectorState.NORMAL
            device.cooldown_until = None

        if device.state is DetectorState.NORMAL and sample.magnitude > self.config.anomaly_threshold:
            device.state = DetectorState.COOLDOWN
            device.cooldown_until = now + self.config.cooldown
            if self._cooldown_store is not None:
                self._cooldown_store.save(sample.device_id, device.cooldown_until)
            anomalies_detected.inc()
            logger.info(
                "Anomaly detected",
                device_id=sample.device_id,
                magnitude=sample.magnitude,
                cooldown_until=device.cooldown_until.isoformat(),
            )
            return self._event(sample, EventKind.ANOMALY, location)

        if self.config.emit_normal_events:
            return self._event(sample, EventKind.NORMAL, location)
        return None

    @staticmethod
    def _event(
        sample: SensorSample, kind: EventKind, location: Location | None
    ) -> MotionEvent:
        return MotionEvent(
            device_id=sample.device_id,
            kind=kind,
            x=sample.x,
            y=sample.y,
            z=sample.z,
            captured_at=sample.captured_at,
            location=location,
            gyroscope=sample.gyroscope,
            event_id=f"{sample.device_id}:{sample.captured_at.isoformat()}",
        )
