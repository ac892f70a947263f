"""Main FastAPI application for the motion telemetry service."""

import asyncio
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from . import __version__
from .aggregation import AggregationEngine
from .config import ServerSettings, settings as default_settings
from .database import PostgresTelemetryStore
from .errors import InvalidShape, StorageUnavailable
from .ingestion import IngestionService
from .logging_setup import setup_logging
from .metrics import request_duration, requests_total
from .models import HealthCheck, utcnow
from .routers import stats, telemetry
from .storage import InMemoryTelemetryStore, TelemetryStore
from .tracing import RequestContextMiddleware, get_request_id

logger = structlog.get_logger(__name__)

STORE_START_RETRIES = 5
STORE_START_RETRY_DELAY_S = 2.0

# Metrics label for requests that matched no route
UNMATCHED_ROUTE = "unmatched"


def build_store(config: ServerSettings) -> TelemetryStore:
    """PostgreSQL when ``database_url`` is set, otherwise in-memory."""
    if config.database_url:
        return PostgresTelemetryStore(
            config.database_url,
            min_size=config.database_min_pool_size,
            max_size=config.database_max_pool_size,
        )
    return InMemoryTelemetryStore()


async def _start_store(store: TelemetryStore) -> None:
    for attempt in range(1, STORE_START_RETRIES + 1):
        try:
            await store.start()
            return
        except StorageUnavailable as e:
            if attempt < STORE_START_RETRIES:
                logger.warning(
                    "Failed to start store, retrying",
                    attempt=attempt,
                    max_retries=STORE_START_RETRIES,
                    retry_in_s=STORE_START_RETRY_DELAY_S,
                    error=str(e),
                )
                await asyncio.sleep(STORE_START_RETRY_DELAY_S)
            else:
                # Keep serving; requests answer 500 and /readyz reports unhealthy
                logger.error("Store unavailable after all retries", error=str(e))


def _error_response(status_code: int, error: str, detail: str | None = None) -> JSONResponse:
    content = {"success": False, "error": error}
    if detail is not None:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    config: ServerSettings | None = None,
    store: TelemetryStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the application.

    Args:
        config: Server settings, the process-wide settings when omitted
        store: Store to use instead of the one derived from ``config``
        clock: Source of server time for receivedAt and stats windows
    """
    config = config or default_settings
    if store is None:
        store = build_store(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            config.service_name,
            level=config.log_level,
            log_format=config.log_format,
            environment=config.environment,
        )
        logger.info(
            "Starting motion telemetry service",
            version=__version__,
            store=type(store).__name__,
        )
        await _start_store(store)

        yield

        logger.info("Shutting down motion telemetry service")
        try:
            await store.stop()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))

    app = FastAPI(
        title="Motion Telemetry API",
        description="Ingestion and query service for device motion telemetry",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.store = store
    app.state.ingestion = IngestionService(store, clock=clock)
    app.state.aggregation = AggregationEngine(store, clock=clock)

    app.add_middleware(RequestContextMiddleware, service_name=config.service_name)

    if config.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(telemetry.router)
    app.include_router(stats.router)

    @app.get("/", status_code=status.HTTP_200_OK)
    async def root() -> JSONResponse:
        """Root endpoint with basic service information."""
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "service": config.service_name,
                "version": __version__,
                "description": "Ingestion and query service for device motion telemetry",
                "endpoints": {
                    "ingest": "POST /sensor-data",
                    "query": "GET /sensor-data",
                    "stats": "GET /stats",
                    "delete": "DELETE /data",
                    "health": "/healthz",
                    "readiness": "/readyz",
                    "metrics": "/metrics",
                    "docs": "/docs",
                },
            },
        )

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check() -> HealthCheck:
        """Liveness probe: the process is serving requests."""
        return HealthCheck(
            status="healthy",
            version=__version__,
            storage_connected=store.is_connected,
        )

    @app.get("/readyz", status_code=status.HTTP_200_OK)
    async def readiness_check() -> HealthCheck:
        """Readiness probe: the store is reachable.

        Always answers 200; the body carries the status.
        """
        ready = store.is_connected
        return HealthCheck(
            status="healthy" if ready else "unhealthy",
            version=__version__,
            storage_connected=ready,
        )

    @app.get("/metrics")
    async def get_metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.middleware("http")
    async def add_metrics_middleware(request: Request, call_next):
        """Collect HTTP request metrics."""
        method = request.method
        start_time = time.perf_counter()

        response = await call_next(request)

        # Label by route template, not the raw path
        route = request.scope.get("route")
        path = getattr(route, "path", UNMATCHED_ROUTE)
        request_duration.labels(method=method, endpoint=path).observe(
            time.perf_counter() - start_time
        )
        requests_total.labels(
            method=method,
            endpoint=path,
            status_code=response.status_code,
        ).inc()
        return response

    @app.exception_handler(InvalidShape)
    async def invalid_shape_handler(request: Request, exc: InvalidShape) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, exc.code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return _error_response(status.HTTP_400_BAD_REQUEST, InvalidShape.code, detail)

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(
        request: Request, exc: StorageUnavailable
    ) -> JSONResponse:
        logger.error(
            "Storage unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.code)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "InternalError",
                "requestId": getattr(request.state, "request_id", None) or get_request_id(),
            },
        )

    return app


app = create_app()


def run() -> None:
    """Console entry point for the API server."""
    import uvicorn

    uvicorn.run(
        "motion_telemetry.main:app",
        host=default_settings.host,
        port=default_settings.port,
        log_level=default_settings.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run()
