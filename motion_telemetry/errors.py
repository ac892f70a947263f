"""Error taxonomy shared by the device agent and the ingestion service."""


class TelemetryError(Exception):
    """Base class for all motion telemetry errors."""

    code = "TelemetryError"


class InvalidShape(TelemetryError):
    """Payload is malformed or misses required fields. Never retried."""

    code = "InvalidShape"


class StorageUnavailable(TelemetryError):
    """The store could not be reached or refused the write. Retryable."""

    code = "StorageUnavailable"


class TransportError(TelemetryError):
    """A delivery attempt failed on the way to the ingestion service."""

    code = "TransportError"

    def __init__(
        self, message: str, *, retryable: bool, status: int | None = None
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class DeliveryExhausted(TelemetryError):
    """The dispatcher spent its retry budget on an event and dropped it."""

    code = "DeliveryExhausted"

    def __init__(self, idempotency_key: str, attempts: int, last_error: str) -> None:
        super().__init__(
            f"delivery of {idempotency_key} failed after {attempts} attempts: {last_error}"
        )
        self.idempotency_key = idempotency_key
        self.attempts = attempts
        self.last_error = last_error
