"""Prometheus metrics for ingestion, aggregation and dispatch"""
from prometheus_client import Counter, Histogram

# HTTP
requests_total = Counter(
    "motion_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)
request_duration = Histogram(
    "motion_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)

# Ingestion: stored, duplicate, invalid, storage_error
ingest_total = Counter(
    "motion_ingest_total",
    "Telemetry payloads processed by the ingestion service",
    ["outcome"],
)

stats_queries_total = Counter(
    "motion_stats_queries_total",
    "Window statistics queries answered",
)

# Device side
anomalies_detected = Counter(
    "motion_anomalies_detected_total",
    "Anomaly events emitted by the detector",
)

# Dispatch attempts: delivered, duplicate, retryable_error, rejected
dispatch_attempts_total = Counter(
    "motion_dispatch_attempts_total",
    "Delivery attempts made by the dispatcher",
    ["outcome"],
)

# Final event fates: delivered, exhausted, rejected, queue_full, cancelled
dispatch_events_total = Counter(
    "motion_dispatch_events_total",
    "Events whose delivery finished",
    ["outcome"],
)
