"""Telemetry ingestion and query endpoints."""

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from ..api.deps import get_ingestion_service, get_settings, get_store
from ..config import ServerSettings
from ..errors import InvalidShape
from ..ingestion import IngestionService
from ..storage import TelemetryStore

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["telemetry"])


@router.post("/sensor-data", status_code=status.HTTP_200_OK)
async def ingest_sensor_data(
    request: Request,
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> JSONResponse:
    """Store one motion telemetry record.

    The raw body goes to the ingestion service, which accepts both payload
    shapes; malformed bodies answer 400.
    """
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidShape("request body is not valid JSON") from e

    result = await ingestion.ingest(payload)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "recordId": result.record_id,
            "duplicate": result.duplicate,
        },
    )


@router.get("/sensor-data")
async def list_sensor_data(
    device_id: str | None = Query(default=None, alias="deviceId", min_length=1),
    since: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    store: TelemetryStore = Depends(get_store),
    settings: ServerSettings = Depends(get_settings),
) -> JSONResponse:
    """Most recent records, oldest first.

    ``limit`` defaults to ``query_default_limit`` and is capped at
    ``query_max_limit``.
    """
    limit = min(limit or settings.query_default_limit, settings.query_max_limit)
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=UTC)

    records = await store.recent(device_id, since, limit)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "count": len(records),
            "data": [record.model_dump(mode="json", by_alias=True) for record in records],
        },
    )


@router.delete("/data")
async def delete_all_data(
    store: TelemetryStore = Depends(get_store),
) -> JSONResponse:
    """Remove every stored record. Safe to repeat."""
    deleted = await store.clear()
    logger.warning("All telemetry data deleted", deleted=deleted)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"success": True, "deleted": deleted},
    )
