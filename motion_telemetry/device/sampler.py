"""Periodic sampling of a sensor source into a bounded channel."""

import asyncio
from collections.abc import Callable
from datetime import datetime

import structlog

from ..models import SensorSample, utcnow
from .sources import SensorSource

logger = structlog.get_logger(__name__)

_END = object()


class SampleSubscription:
    """Scoped subscription to a sampler.

    Use as ``async with sampler.subscribe() as samples: async for s in samples``.
    Entering starts the polling task, leaving stops it. Samples are delivered
    in capture order through a bounded buffer; when the consumer falls behind
    the oldest buffered sample is discarded.
    """

    def __init__(self, sampler: "Sampler") -> None:
        self._sampler = sampler
        # One extra slot so the end marker always fits
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=sampler.buffer_size + 1)
        self._task: asyncio.Task | None = None
        self.status = "idle"
        self.produced = 0
        self.discarded = 0

    async def __aenter__(self) -> "SampleSubscription":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.unsubscribe()

    def start(self) -> None:
        if self.status != "idle":
            return
        if not self._sampler.source.available():
            self.status = "unavailable"
            self._queue.put_nowait(_END)
            logger.warning(
                "Sensor unavailable, no samples will be produced",
                device_id=self._sampler.device_id,
            )
            return
        self.status = "active"
        self._task = asyncio.create_task(
            self._produce(), name=f"sampler_{self._sampler.device_id}"
        )

    async def unsubscribe(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self.status == "active":
            self.status = "closed"

    def _offer(self, sample: SensorSample) -> None:
        if self._queue.qsize() >= self._sampler.buffer_size:
            self._queue.get_nowait()
            self.discarded += 1
            logger.debug(
                "Sample buffer full, discarded oldest sample",
                device_id=sample.device_id,
            )
        self._queue.put_nowait(sample)

    async def _produce(self) -> None:
        sampler = self._sampler
        interval = sampler.interval_ms / 1000.0
        try:
            while sampler.max_samples is None or self.produced < sampler.max_samples:
                try:
                    reading = await sampler.source.read()
                except Exception as e:
                    logger.error(
                        "Error reading sensor",
                        device_id=sampler.device_id,
                        error=str(e),
                    )
                    reading = None

                if reading is not None:
                    accel = reading.acceleration
                    self._offer(
                        SensorSample(
                            device_id=sampler.device_id,
                            x=accel.x,
                            y=accel.y,
                            z=accel.z,
                            captured_at=sampler.clock(),
                            gyroscope=reading.gyroscope,
                        )
                    )
                    self.produced += 1
                    if sampler.max_samples is not None and self.produced >= sampler.max_samples:
                        break

                await asyncio.sleep(interval)
        finally:
            if self._queue.full():
                self._queue.get_nowait()
            self._queue.put_nowait(_END)

    def __aiter__(self) -> "SampleSubscription":
        self.start()
        return self

    async def __anext__(self) -> SensorSample:
        item = await self._queue.get()
        if item is _END:
            # Keep the marker so further iteration also stops
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item


class Sampler:
    """Produces ``SensorSample``s for one logical device at a fixed nominal interval.

    Timing is best-effort; only capture order is guaranteed. Every call to
    ``subscribe`` starts a fresh sequence.
    """

    def __init__(
        self,
        source: SensorSource,
        device_id: str,
        interval_ms: int = 500,
        buffer_size: int = 64,
        max_samples: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.source = source
        self.device_id = device_id
        self.interval_ms = interval_ms
        self.buffer_size = buffer_size
        self.max_samples = max_samples
        self.clock = clock

    def subscribe(self) -> SampleSubscription:
        return SampleSubscription(self)
