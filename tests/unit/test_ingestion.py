"""Unit tests for the ingestion service."""

import asyncio
import gc
from unittest.mock import AsyncMock

import pytest

from motion_telemetry.errors import InvalidShape, StorageUnavailable
from motion_telemetry.ingestion import IngestionService
from motion_telemetry.models import EventKind, VibrationLevel
from motion_telemetry.storage import InMemoryTelemetryStore
from tests.test_helpers import (
    T0,
    FixedClock,
    at_ms,
    create_minimal_payload,
    create_sensor_data_payload,
    make_event,
)


@pytest.fixture()
def store():
    return InMemoryTelemetryStore()


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def service(store, clock):
    return IngestionService(store, clock=clock)


class TestIngest:
    """Test normalization and storage."""

    @pytest.mark.asyncio()
    async def test_defaults_filled(self, service, store):
        payload = create_minimal_payload(acceleration={"x": 3.0, "y": 0.0, "z": 0.0})

        result = await service.ingest(payload)

        assert result.duplicate is False
        [record] = await store.range_query(None, at_ms(-1), at_ms(1))
        assert record.record_id == result.record_id
        assert record.vibration_level is VibrationLevel.LOW
        assert record.location.latitude == 0.0
        assert record.location.longitude == 0.0
        assert record.activity == "unknown"
        assert record.battery_level == 100
        assert record.magnitude == pytest.approx(3.0)
        assert record.received_at == T0

    @pytest.mark.asyncio()
    async def test_full_payload_preserved(self, service, store):
        result = await service.ingest(create_sensor_data_payload(kind="anomaly"))

        [record] = await store.recent(None, None, 10)
        assert record.record_id == result.record_id
        assert record.kind is EventKind.ANOMALY
        assert record.activity == "walking"
        assert record.vibration_level is VibrationLevel.MEDIUM
        assert record.gyroscope is not None
        assert record.battery_level == 87

    @pytest.mark.asyncio()
    async def test_supplied_magnitude_recomputed(self, service, store):
        await service.ingest(
            create_minimal_payload(acceleration={"x": 3.0, "y": 4.0, "z": 0.0}, magnitude=99.0)
        )
        [record] = await store.recent(None, None, 1)
        assert record.magnitude == pytest.approx(5.0)

    @pytest.mark.asyncio()
    async def test_legacy_flat_payload(self, service, store):
        await service.ingest({"deviceId": "old-app", "x": 0.0, "y": 0.0, "z": 2.0})
        [record] = await store.recent("old-app", None, 1)
        assert record.magnitude == pytest.approx(2.0)


class TestValidation:
    """Test rejection of malformed payloads."""

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "text",
            {},
            {"deviceId": "d"},
            {"acceleration": {"x": 1.0, "y": 1.0, "z": 1.0}},
            {"deviceId": "d", "magnitude": "high"},
            {"deviceId": "d", "magnitude": 1.0, "batteryLevel": -5},
            {"deviceId": "d", "magnitude": "1.5"},
            {"deviceId": "d", "magnitude": True},
            {"deviceId": "d", "acceleration": {"x": True, "y": False, "z": True}},
            {"deviceId": "d", "acceleration": {"x": "3", "y": "0", "z": "0"}},
            {"deviceId": "d", "x": "3", "y": 0.0, "z": 0.0},
        ],
    )
    async def test_invalid_shape(self, service, store, payload):
        with pytest.raises(InvalidShape):
            await service.ingest(payload)
        assert await store.count() == 0

    def test_error_message_names_field(self, service):
        with pytest.raises(InvalidShape, match="deviceId"):
            service.parse({"magnitude": 1.0})


class TestIdempotency:
    """Test duplicate suppression."""

    @pytest.mark.asyncio()
    async def test_same_event_stored_once(self, service, store):
        payload = create_minimal_payload(eventId="evt-1")

        first = await service.ingest(payload)
        second = await service.ingest(payload)

        assert second.duplicate is True
        assert second.record_id == first.record_id
        assert await store.count() == 1

    @pytest.mark.asyncio()
    async def test_captured_at_identifies_event(self, service, store):
        payload = create_minimal_payload(capturedAt=T0.isoformat())

        await service.ingest(payload)
        result = await service.ingest(payload)

        assert result.duplicate is True
        assert await store.count() == 1

    @pytest.mark.asyncio()
    async def test_dispatched_event_matches_captured_at_payload(self, service, store):
        event = make_event(ms=0)
        first = await service.ingest(event.to_payload())

        result = await service.ingest(create_minimal_payload(capturedAt=T0.isoformat()))

        assert result.duplicate is True
        assert result.record_id == first.record_id
        assert await store.count() == 1

    @pytest.mark.asyncio()
    async def test_same_event_id_on_other_device_not_duplicate(self, service, store):
        await service.ingest(create_minimal_payload("a", eventId="evt-1"))
        result = await service.ingest(create_minimal_payload("b", eventId="evt-1"))

        assert result.duplicate is False
        assert await store.count() == 2

    @pytest.mark.asyncio()
    async def test_concurrent_duplicates(self, service, store):
        payload = create_minimal_payload(eventId="evt-1")

        results = await asyncio.gather(*(service.ingest(payload) for _ in range(5)))

        assert len({r.record_id for r in results}) == 1
        assert sum(not r.duplicate for r in results) == 1
        assert await store.count() == 1

    @pytest.mark.asyncio()
    async def test_device_locks_released_when_idle(self, service):
        await asyncio.gather(
            *(service.ingest(create_minimal_payload(f"device-{i}")) for i in range(50))
        )
        gc.collect()

        assert len(service._device_locks) == 0


class TestReceivedAt:
    """Test server timestamps."""

    @pytest.mark.asyncio()
    async def test_assigned_from_clock(self, service, store, clock):
        clock.advance(1500)
        await service.ingest(create_minimal_payload())
        [record] = await store.recent(None, None, 1)
        assert record.received_at == at_ms(1500)

    @pytest.mark.asyncio()
    async def test_supplied_value_kept(self, service, store):
        await service.ingest(create_minimal_payload(receivedAt=at_ms(-500).isoformat()))
        [record] = await store.recent(None, None, 1)
        assert record.received_at == at_ms(-500)

    @pytest.mark.asyncio()
    async def test_older_value_clamped(self, service, store):
        await service.ingest(create_minimal_payload(eventId="1"))
        await service.ingest(create_minimal_payload(eventId="2", receivedAt=at_ms(-500).isoformat()))

        records = await store.recent("phone-1", None, 10)

        assert [r.received_at for r in records] == [T0, T0]

    @pytest.mark.asyncio()
    async def test_non_decreasing_per_device(self, service, store, clock):
        for i in range(10):
            clock.advance(10)
            await service.ingest(create_minimal_payload(eventId=str(i)))

        records = await store.recent("phone-1", None, 100)
        times = [r.received_at for r in records]
        assert times == sorted(times)


class TestStorageFailure:
    """Test store errors."""

    @pytest.mark.asyncio()
    async def test_storage_unavailable_propagates(self, clock):
        store = AsyncMock()
        store.find_by_idempotency_key.return_value = None
        store.last_received_at.return_value = None
        store.next_record_id.return_value = 1
        store.append.side_effect = StorageUnavailable("database not connected")
        service = IngestionService(store, clock=clock)

        with pytest.raises(StorageUnavailable):
            await service.ingest(create_minimal_payload(eventId="e"))
