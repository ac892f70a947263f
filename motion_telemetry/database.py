"""PostgreSQL-backed telemetry store."""

import json
from datetime import datetime
from typing import Any

import asyncpg
import structlog

from .errors import StorageUnavailable
from .models import Location, TelemetryRecord, Vector3
from .storage import TelemetryStore

logger = structlog.get_logger(__name__)

# Errors that mean "the store is unreachable or refused the statement"
_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_COLUMNS = """
    id, idempotency_key, device_id, kind, acceleration, gyroscope, magnitude,
    activity, vibration_level, battery_level, latitude, longitude,
    captured_at, received_at
"""


def _vector_json(vector: Vector3 | None) -> str | None:
    return json.dumps(vector.model_dump()) if vector is not None else None


def _vector_from(value: Any) -> Vector3 | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return Vector3(**value)


def _record_from_row(row: Any) -> TelemetryRecord:
    return TelemetryRecord(
        record_id=row["id"],
        idempotency_key=row["idempotency_key"],
        device_id=row["device_id"],
        kind=row["kind"],
        acceleration=_vector_from(row["acceleration"]),
        gyroscope=_vector_from(row["gyroscope"]),
        magnitude=row["magnitude"],
        activity=row["activity"],
        vibration_level=row["vibration_level"],
        battery_level=row["battery_level"],
        location=Location(latitude=row["latitude"], longitude=row["longitude"]),
        captured_at=row["captured_at"],
        received_at=row["received_at"],
    )


class PostgresTelemetryStore(TelemetryStore):
    """Manages the connection pool and the ``telemetry_records`` table."""

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10) -> None:
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self.pool: asyncpg.Pool | None = None

    async def start(self) -> None:
        """Start the connection pool and ensure the schema exists."""
        logger.info("Starting database connection pool")
        try:
            self.pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=30,
                server_settings={"application_name": "motion-telemetry-api"},
            )
            await self._ensure_tables_exist()
        except _STORAGE_ERRORS as e:
            logger.error("Failed to start database connection pool", error=str(e))
            raise StorageUnavailable(str(e)) from e
        logger.info("Database connection pool started successfully")

    async def stop(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
        logger.info("Database connection pool stopped")

    @property
    def is_connected(self) -> bool:
        return self.pool is not None and not self.pool._closed

    async def _ensure_tables_exist(self) -> None:
        async with self.pool.acquire() as connection:
            await connection.execute("""
                CREATE TABLE IF NOT EXISTS telemetry_records (
                    id BIGSERIAL PRIMARY KEY,
                    idempotency_key VARCHAR(512) UNIQUE,
                    device_id VARCHAR(255) NOT NULL,
                    kind VARCHAR(16) NOT NULL,
                    acceleration JSONB,
                    gyroscope JSONB,
                    magnitude DOUBLE PRECISION NOT NULL CHECK (magnitude >= 0),
                    activity VARCHAR(64) NOT NULL,
                    vibration_level VARCHAR(16) NOT NULL,
                    battery_level DOUBLE PRECISION NOT NULL,
                    latitude DOUBLE PRECISION NOT NULL,
                    longitude DOUBLE PRECISION NOT NULL,
                    captured_at TIMESTAMP WITH TIME ZONE,
                    received_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_telemetry_records_device_received
                ON telemetry_records (device_id, received_at DESC);
            """)
            await connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_telemetry_records_received
                ON telemetry_records (received_at DESC);
            """)
        logger.info("Database tables ensured to exist")

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StorageUnavailable("database not connected")
        return self.pool

    async def _fetch(self, query: str, *args: Any) -> list[Any]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as connection:
                return await connection.fetch(query, *args)
        except _STORAGE_ERRORS as e:
            logger.error("Database query failed", error=str(e))
            raise StorageUnavailable(str(e)) from e

    async def _fetchval(self, query: str, *args: Any) -> Any:
        pool = self._require_pool()
        try:
            async with pool.acquire() as connection:
                return await connection.fetchval(query, *args)
        except _STORAGE_ERRORS as e:
            logger.error("Database query failed", error=str(e))
            raise StorageUnavailable(str(e)) from e

    async def next_record_id(self) -> int:
        return await self._fetchval(
            "SELECT nextval(pg_get_serial_sequence('telemetry_records', 'id'))"
        )

    async def append(self, record: TelemetryRecord) -> int:
        return await self._fetchval(
            """
            INSERT INTO telemetry_records (
                id, idempotency_key, device_id, kind, acceleration, gyroscope,
                magnitude, activity, vibration_level, battery_level,
                latitude, longitude, captured_at, received_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING id
            """,
            record.record_id,
            record.idempotency_key,
            record.device_id,
            record.kind.value,
            _vector_json(record.acceleration),
            _vector_json(record.gyroscope),
            record.magnitude,
            record.activity,
            record.vibration_level.value,
            record.battery_level,
            record.location.latitude,
            record.location.longitude,
            record.captured_at,
            record.received_at,
        )

    async def range_query(
        self,
        device_id: str | None,
        start: datetime,
        end: datetime,
    ) -> list[TelemetryRecord]:
        rows = await self._fetch(
            f"""
            SELECT {_COLUMNS} FROM telemetry_records
            WHERE ($1::varchar IS NULL OR device_id = $1)
              AND received_at >= $2 AND received_at < $3
            ORDER BY received_at ASC, id ASC
            """,
            device_id,
            start,
            end,
        )
        return [_record_from_row(row) for row in rows]

    async def recent(
        self,
        device_id: str | None,
        since: datetime | None,
        limit: int,
    ) -> list[TelemetryRecord]:
        rows = await self._fetch(
            f"""
            SELECT {_COLUMNS} FROM telemetry_records
            WHERE ($1::varchar IS NULL OR device_id = $1)
              AND ($2::timestamptz IS NULL OR received_at >= $2)
            ORDER BY received_at DESC, id DESC
            LIMIT $3
            """,
            device_id,
            since,
            limit,
        )
        return [_record_from_row(row) for row in reversed(rows)]

    async def find_by_idempotency_key(self, key: str) -> TelemetryRecord | None:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM telemetry_records WHERE idempotency_key = $1",
            key,
        )
        return _record_from_row(rows[0]) if rows else None

    async def last_received_at(self, device_id: str) -> datetime | None:
        return await self._fetchval(
            "SELECT max(received_at) FROM telemetry_records WHERE device_id = $1",
            device_id,
        )

    async def count(self) -> int:
        return await self._fetchval("SELECT count(*) FROM telemetry_records")

    async def clear(self) -> int:
        removed = await self._fetchval(
            "WITH deleted AS (DELETE FROM telemetry_records RETURNING 1) "
            "SELECT count(*) FROM deleted"
        )
        logger.info("Telemetry records cleared", removed=removed)
        return removed
