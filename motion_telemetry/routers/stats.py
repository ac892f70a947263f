"""Windowed statistics endpoint."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from ..aggregation import AggregationEngine
from ..api.deps import get_aggregation_engine, get_settings
from ..config import ServerSettings

router = APIRouter(tags=["stats"])


@router.get("/stats")
async def get_stats(
    device_id: str | None = Query(default=None, alias="deviceId", min_length=1),
    window_ms: int | None = Query(default=None, alias="windowMs"),
    engine: AggregationEngine = Depends(get_aggregation_engine),
    settings: ServerSettings = Depends(get_settings),
) -> JSONResponse:
    """Count and magnitude statistics over ``[now - windowMs, now)``."""
    if window_ms is None:
        window_ms = settings.stats_default_window_ms

    try:
        window = timedelta(milliseconds=window_ms)
    except OverflowError:
        # Outside the timedelta range: unbounded if positive, rejected below if not
        window = timedelta.max if window_ms > 0 else timedelta(0)

    try:
        result = await engine.stats(device_id, window)
    except ValueError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "InvalidWindow", "detail": str(e)},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=result.model_dump(mode="json", by_alias=True),
    )
