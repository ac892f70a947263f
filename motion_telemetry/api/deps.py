"""API dependencies."""

from fastapi import Request

from ..aggregation import AggregationEngine
from ..config import ServerSettings
from ..ingestion import IngestionService
from ..storage import TelemetryStore


def get_settings(request: Request) -> ServerSettings:
    return request.app.state.settings


def get_store(request: Request) -> TelemetryStore:
    return request.app.state.store


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_aggregation_engine(request: Request) -> AggregationEngine:
    return request.app.state.aggregation
