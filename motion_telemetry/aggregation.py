"""Windowed statistics over stored telemetry."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import numpy as np
import structlog

from .metrics import stats_queries_total
from .models import WindowStats, utcnow
from .storage import TelemetryStore

logger = structlog.get_logger(__name__)

# Earliest representable window start
EARLIEST = datetime.min.replace(tzinfo=UTC)


class AggregationEngine:
    """Recompute-on-read fold over ``TelemetryStore.range_query``.

    Reads use the store's snapshot range query, so a stats request never
    blocks concurrent appends and may miss appends that race with it.
    """

    def __init__(
        self,
        store: TelemetryStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock

    async def stats(
        self,
        device_id: str | None = None,
        window: timedelta = timedelta(minutes=1),
    ) -> WindowStats:
        """Statistics for the window ``[now - window, now)``.

        A window longer than the representable past starts at ``EARLIEST``.
        """
        if window <= timedelta(0):
            raise ValueError("window duration must be positive")
        end = self._clock()
        try:
            start = end - window
        except OverflowError:
            start = EARLIEST
        return await self.stats_between(device_id, start, end)

    async def stats_between(
        self,
        device_id: str | None,
        start: datetime,
        end: datetime,
    ) -> WindowStats:
        """Statistics for an explicit half-open window ``[start, end)``."""
        if end <= start:
            raise ValueError("window end must be after window start")

        records = await self.store.range_query(device_id, start, end)
        stats_queries_total.inc()

        if not records:
            return WindowStats(device_id=device_id, window_start=start, window_end=end)

        magnitudes = np.fromiter(
            (record.magnitude for record in records),
            dtype=np.float64,
            count=len(records),
        )
        result = WindowStats(
            device_id=device_id,
            window_start=start,
            window_end=end,
            count=int(magnitudes.size),
            avg_magnitude=float(magnitudes.mean()),
            min_magnitude=float(magnitudes.min()),
            max_magnitude=float(magnitudes.max()),
        )
        logger.debug(
            "Window statistics computed",
            device_id=device_id,
            count=result.count,
            avg_magnitude=result.avg_magnitude,
        )
        return result
