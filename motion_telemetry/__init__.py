"""Motion telemetry pipeline: device agent, ingestion service and query API."""

__version__ = "0.1.0"
