"""Append-only telemetry storage."""

import heapq
import itertools
from abc import ABC, abstractmethod
from bisect import bisect_left
from datetime import datetime

import structlog

from .models import TelemetryRecord

logger = structlog.get_logger(__name__)

# (received_at timestamp, record_id, record); ordering never reaches the record
_Entry = tuple[float, int, TelemetryRecord]


class TelemetryStore(ABC):
    """Append-only collection of telemetry records keyed by (device, receivedAt)."""

    async def start(self) -> None:
        """Acquire resources. No-op by default."""

    async def stop(self) -> None:
        """Release resources. No-op by default."""

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def next_record_id(self) -> int:
        """Reserve the identifier for the next appended record."""

    @abstractmethod
    async def append(self, record: TelemetryRecord) -> int:
        """Append a record and return its id. Never overwrites or reorders."""

    @abstractmethod
    async def range_query(
        self,
        device_id: str | None,
        start: datetime,
        end: datetime,
    ) -> list[TelemetryRecord]:
        """Records with ``start <= receivedAt < end``, ascending by receivedAt."""

    @abstractmethod
    async def recent(
        self,
        device_id: str | None,
        since: datetime | None,
        limit: int,
    ) -> list[TelemetryRecord]:
        """The newest ``limit`` records at or after ``since``, ascending."""

    @abstractmethod
    async def find_by_idempotency_key(self, key: str) -> TelemetryRecord | None: ...

    @abstractmethod
    async def last_received_at(self, device_id: str) -> datetime | None: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def clear(self) -> int:
        """Delete every record and return how many were removed."""


class InMemoryTelemetryStore(TelemetryStore):
    """Process-local store.

    Each device owns an append-only list of ``(ts, record_id, record)`` tuples
    kept sorted by receivedAt, so range lookups are two bisections. Readers
    take slices (snapshots) and never lock.
    """

    def __init__(self) -> None:
        self._by_device: dict[str, list[_Entry]] = {}
        self._by_key: dict[str, TelemetryRecord] = {}
        self._ids = itertools.count(1)
        self._total = 0

    @property
    def is_connected(self) -> bool:
        return True

    async def next_record_id(self) -> int:
        return next(self._ids)

    async def append(self, record: TelemetryRecord) -> int:
        entries = self._by_device.setdefault(record.device_id, [])
        ts = record.received_at.timestamp()
        if entries and ts < entries[-1][0]:
            raise ValueError(
                f"out-of-order append for device {record.device_id}: "
                f"{record.received_at.isoformat()} precedes the latest record"
            )
        if record.idempotency_key is not None:
            if record.idempotency_key in self._by_key:
                raise ValueError(f"duplicate idempotency key {record.idempotency_key}")
            self._by_key[record.idempotency_key] = record
        entries.append((ts, record.record_id, record))
        self._total += 1
        return record.record_id

    def _device_slice(
        self, entries: list[_Entry], start: float | None, end: float | None
    ) -> list[_Entry]:
        lo = 0 if start is None else bisect_left(entries, (start,))
        hi = len(entries) if end is None else bisect_left(entries, (end,))
        return entries[lo:hi]

    def _slices(
        self, device_id: str | None, start: float | None, end: float | None
    ) -> list[list[_Entry]]:
        if device_id is not None:
            entries = self._by_device.get(device_id)
            return [self._device_slice(entries, start, end)] if entries else []
        return [
            self._device_slice(entries, start, end)
            for entries in list(self._by_device.values())
        ]

    async def range_query(
        self,
        device_id: str | None,
        start: datetime,
        end: datetime,
    ) -> list[TelemetryRecord]:
        slices = self._slices(device_id, start.timestamp(), end.timestamp())
        return [entry[2] for entry in heapq.merge(*slices)]

    async def recent(
        self,
        device_id: str | None,
        since: datetime | None,
        limit: int,
    ) -> list[TelemetryRecord]:
        if limit <= 0:
            return []
        start = since.timestamp() if since is not None else None
        slices = [s[-limit:] for s in self._slices(device_id, start, None)]
        merged = list(heapq.merge(*slices))
        return [entry[2] for entry in merged[-limit:]]

    async def find_by_idempotency_key(self, key: str) -> TelemetryRecord | None:
        return self._by_key.get(key)

    async def last_received_at(self, device_id: str) -> datetime | None:
        entries = self._by_device.get(device_id)
        if not entries:
            return None
        return entries[-1][2].received_at

    async def count(self) -> int:
        return self._total

    async def clear(self) -> int:
        removed = self._total
        self._by_device = {}
        self._by_key = {}
        self._total = 0
        logger.info("In-memory store cleared", removed=removed)
        return removed
