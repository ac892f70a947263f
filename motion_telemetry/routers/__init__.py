"""Router package for API endpoints."""

from . import stats, telemetry

__all__ = ["stats", "telemetry"]
