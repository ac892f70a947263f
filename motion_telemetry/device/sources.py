"""Sensor sources feeding the sampler."""

from typing import Protocol

import numpy as np
from pydantic import BaseModel

from ..models import Vector3


class SensorReading(BaseModel):
    """One raw read from the motion sensor."""

    acceleration: Vector3
    gyroscope: Vector3 | None = None


class SensorSource(Protocol):
    """Anything that can be polled for accelerometer readings."""

    def available(self) -> bool: ...

    async def read(self) -> SensorReading | None: ...


class SimulatedSensorSource:
    """Device at rest (about 1 g on z) with occasional impact spikes.

    Used when no physical sensor is attached, mirroring the simulated feed
    of the mobile app.
    """

    def __init__(
        self,
        seed: int | None = None,
        noise: float = 0.05,
        spike_probability: float = 0.02,
        spike_range: tuple[float, float] = (2.6, 6.0),
    ) -> None:
        if not 0.0 <= spike_probability <= 1.0:
            raise ValueError("spike_probability must be within [0, 1]")
        self._rng = np.random.default_rng(seed)
        self.noise = noise
        self.spike_probability = spike_probability
        self.spike_range = spike_range

    def available(self) -> bool:
        return True

    async def read(self) -> SensorReading:
        if self._rng.random() < self.spike_probability:
            direction = self._rng.normal(size=3)
            direction /= np.linalg.norm(direction)
            accel = direction * self._rng.uniform(*self.spike_range)
        else:
            accel = np.array([0.0, 0.0, 1.0]) + self._rng.normal(0.0, self.noise, size=3)
        gyro = self._rng.normal(0.0, self.noise, size=3)
        return SensorReading(
            acceleration=Vector3(x=float(accel[0]), y=float(accel[1]), z=float(accel[2])),
            gyroscope=Vector3(x=float(gyro[0]), y=float(gyro[1]), z=float(gyro[2])),
        )
