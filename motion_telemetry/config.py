"""Configuration management for the motion telemetry server and device agent."""

import socket

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .device.detector import DetectorConfig
from .device.dispatcher import RetryPolicy


class ServerSettings(BaseSettings):
    """Ingestion/query server settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MOTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service identification
    service_name: str = Field(
        default="motion-telemetry-api",
        description="Name of the service for logging and metrics",
    )
    environment: str = Field(default="development", description="Deployment environment")

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")

    # Storage
    database_url: str | None = Field(
        default=None,
        description="PostgreSQL connection URL; in-memory store when unset",
    )
    database_min_pool_size: int = Field(default=2, ge=1)
    database_max_pool_size: int = Field(default=10, ge=1)

    # Queries
    stats_default_window_ms: int = Field(
        default=60_000,
        gt=0,
        description="Window used by /stats when windowMs is omitted",
    )
    query_default_limit: int = Field(default=100, ge=1)
    query_max_limit: int = Field(default=1000, ge=1)

    enable_cors: bool = Field(default=True, description="Enable permissive CORS")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format: json or console")


class DeviceSettings(BaseSettings):
    """Device agent settings.

    ``cooldown_duration_ms`` has no default: the anomaly cooldown must be
    configured explicitly (``MOTION_COOLDOWN_DURATION_MS``).
    """

    model_config = SettingsConfigDict(
        env_prefix="MOTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    device_id: str = Field(
        default_factory=socket.gethostname,
        description="Logical device identifier",
    )
    ingest_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the ingestion service",
    )
    request_timeout_s: float = Field(default=10.0, gt=0)

    # Sampling
    sample_interval_ms: int = Field(default=500, gt=0)
    sample_buffer_size: int = Field(default=64, ge=1)

    # Detection
    anomaly_threshold: float = Field(default=2.5, ge=0)
    cooldown_duration_ms: int = Field(ge=0, description="Anomaly cooldown in ms")
    emit_normal_events: bool = Field(default=False)
    persist_cooldown_state: bool = Field(default=False)
    cooldown_state_path: str = Field(default="cooldown_state.json")

    # Dispatch
    dispatch_base_delay_ms: int = Field(default=250, gt=0)
    dispatch_max_delay_ms: int = Field(default=5_000, gt=0)
    dispatch_max_attempts: int = Field(default=5, ge=1)
    dispatch_queue_max: int = Field(default=1000, ge=1)

    # Logging
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    def detector_config(self) -> DetectorConfig:
        """Build the detector configuration from these settings."""
        return DetectorConfig(
            anomaly_threshold=self.anomaly_threshold,
            cooldown_duration_ms=self.cooldown_duration_ms,
            emit_normal_events=self.emit_normal_events,
            persist_cooldown_state=self.persist_cooldown_state,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the dispatcher retry policy from these settings."""
        return RetryPolicy(
            base_delay_ms=self.dispatch_base_delay_ms,
            max_delay_ms=self.dispatch_max_delay_ms,
            max_attempts=self.dispatch_max_attempts,
        )


# Global settings instance for the server process
settings = ServerSettings()
