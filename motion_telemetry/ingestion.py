"""Ingestion service: validation, normalization, dedupe and ordered writes."""

import asyncio
import weakref
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from .errors import InvalidShape, StorageUnavailable
from .metrics import ingest_total
from .models import IngestResult, SensorDataPayload, TelemetryRecord, utcnow
from .storage import TelemetryStore

logger = structlog.get_logger(__name__)


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "body"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class IngestionService:
    """Single normalization point between producers and the store.

    Writes for one device are serialized (dedupe check, receivedAt
    assignment and append happen under that device's lock) so a device's
    records are stored in non-decreasing receivedAt order. Different devices
    proceed concurrently.
    """

    def __init__(
        self,
        store: TelemetryStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock
        # Locks are dropped once no ingest for the device holds a reference
        self._device_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _device_lock(self, device_id: str) -> asyncio.Lock:
        lock = self._device_locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._device_locks[device_id] = lock
        return lock

    def parse(self, payload: Any) -> SensorDataPayload:
        """Validate a raw payload, raising InvalidShape on any problem."""
        if not isinstance(payload, dict):
            raise InvalidShape("payload must be a JSON object")
        try:
            return SensorDataPayload.model_validate(payload)
        except ValidationError as e:
            raise InvalidShape(_describe_validation_error(e)) from e

    async def ingest(self, payload: Any) -> IngestResult:
        """Validate and store one payload.

        Returns:
            IngestResult with the record id; ``duplicate`` is set when the
            idempotency key was already stored.

        Raises:
            InvalidShape: the payload is malformed (not retryable)
            StorageUnavailable: the store failed (retryable)
        """
        try:
            data = self.parse(payload)
        except InvalidShape as e:
            ingest_total.labels(outcome="invalid").inc()
            logger.warning("Rejected telemetry payload", error=str(e))
            raise

        key = data.idempotency_key()
        async with self._device_lock(data.device_id):
            try:
                if key is not None:
                    existing = await self.store.find_by_idempotency_key(key)
                    if existing is not None:
                        ingest_total.labels(outcome="duplicate").inc()
                        logger.info(
                            "Duplicate telemetry ignored",
                            device_id=data.device_id,
                            record_id=existing.record_id,
                            idempotency_key=key,
                        )
                        return IngestResult(record_id=existing.record_id, duplicate=True)

                received_at = data.received_at or self._clock()
                last = await self.store.last_received_at(data.device_id)
                if last is not None and received_at < last:
                    received_at = last

                record = TelemetryRecord(
                    record_id=await self.store.next_record_id(),
                    idempotency_key=key,
                    device_id=data.device_id,
                    kind=data.kind,
                    acceleration=data.acceleration,
                    gyroscope=data.gyroscope,
                    magnitude=data.resolved_magnitude(),
                    activity=data.activity,
                    vibration_level=data.vibration_level,
                    battery_level=data.battery_level,
                    location=data.location,
                    captured_at=data.captured_at,
                    received_at=received_at,
                )
                record_id = await self.store.append(record)
            except StorageUnavailable:
                ingest_total.labels(outcome="storage_error").inc()
                raise

        ingest_total.labels(outcome="stored").inc()
        logger.info(
            "Telemetry record stored",
            device_id=record.device_id,
            record_id=record_id,
            kind=record.kind.value,
            magnitude=record.magnitude,
        )
        return IngestResult(record_id=record_id)
