"""At-least-once delivery of motion events with bounded exponential backoff."""

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel, Field, model_validator

from ..errors import DeliveryExhausted, TelemetryError, TransportError
from ..metrics import dispatch_attempts_total, dispatch_events_total
from ..models import DispatchResult, MotionEvent
from .transport import Transport

logger = structlog.get_logger(__name__)

FailureHandler = Callable[[MotionEvent, TelemetryError], None]


class RetryPolicy(BaseModel):
    """Exponential backoff with a mandatory attempt cap."""

    base_delay_ms: int = Field(default=250, gt=0)
    max_delay_ms: int = Field(default=5_000, gt=0)
    max_attempts: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return self

    def backoff(self, failed_attempts: int) -> float:
        """Seconds to wait after ``failed_attempts`` consecutive failures."""
        delay_ms = self.base_delay_ms * 2 ** (failed_attempts - 1)
        return min(delay_ms, self.max_delay_ms) / 1000.0


class DispatcherStats(BaseModel):
    submitted: int = 0
    attempts: int = 0
    delivered: int = 0
    duplicates: int = 0
    exhausted: int = 0
    rejected: int = 0
    dropped: int = 0
    cancelled: int = 0


class Dispatcher:
    """Queues events per device and delivers them on background tasks.

    ``submit`` never blocks: it enqueues and returns. Each device has one
    worker task, so a device's events are sent one at a time in FIFO order
    while different devices are delivered in parallel. Must be used from a
    running event loop.
    """

    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy,
        queue_max: int = 1000,
        on_failure: FailureHandler | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if queue_max < 1:
            raise ValueError("queue_max must be at least 1")
        self.transport = transport
        self.policy = policy
        self.queue_max = queue_max
        self.stats = DispatcherStats()
        self._on_failure = on_failure
        self._sleep = sleep
        self._queues: dict[str, asyncio.Queue[MotionEvent]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """Events queued and not yet finished."""
        return sum(queue.qsize() for queue in self._queues.values())

    def submit(self, event: MotionEvent) -> DispatchResult:
        key = event.idempotency_key
        if self._closed:
            return DispatchResult(accepted=False, idempotency_key=key, reason="closed")

        queue = self._queues.get(event.device_id)
        if queue is None:
            queue = self._queues[event.device_id] = asyncio.Queue(maxsize=self.queue_max)

        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            dispatch_events_total.labels(outcome="queue_full").inc()
            logger.warning(
                "Dispatch queue full, event dropped",
                device_id=event.device_id,
                idempotency_key=key,
                queue_max=self.queue_max,
            )
            return DispatchResult(accepted=False, idempotency_key=key, reason="queue_full")

        self.stats.submitted += 1
        worker = self._workers.get(event.device_id)
        if worker is None or worker.done():
            self._workers[event.device_id] = asyncio.create_task(
                self._worker(event.device_id), name=f"dispatch_{event.device_id}"
            )
        return DispatchResult(accepted=True, idempotency_key=key)

    async def join(self) -> None:
        """Wait until every queued event has been delivered or dropped."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def close(self, drain: bool = True, timeout: float | None = None) -> None:
        """Stop accepting events and shut the workers down.

        With ``drain`` the queues are given up to ``timeout`` seconds to empty.
        Whatever is still in backoff, in flight or queued afterwards is
        dropped with a warning.
        """
        self._closed = True
        if drain and self._queues:
            try:
                await asyncio.wait_for(self.join(), timeout)
            except TimeoutError:
                logger.warning("Dispatcher drain timed out", pending=self.pending())

        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()

        for device_id, queue in self._queues.items():
            dropped = 0
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
                dropped += 1
            if dropped:
                self.stats.cancelled += dropped
                dispatch_events_total.labels(outcome="cancelled").inc(dropped)
                logger.warning(
                    "Undelivered events dropped on shutdown",
                    device_id=device_id,
                    dropped=dropped,
                )
        logger.info("Dispatcher closed", **self.stats.model_dump())

    async def _worker(self, device_id: str) -> None:
        queue = self._queues[device_id]
        while True:
            event = await queue.get()
            try:
                await self._deliver(event)
            except asyncio.CancelledError:
                self.stats.cancelled += 1
                dispatch_events_total.labels(outcome="cancelled").inc()
                logger.warning(
                    "Dispatch cancelled, event dropped",
                    device_id=device_id,
                    idempotency_key=event.idempotency_key,
                )
                raise
            finally:
                queue.task_done()

    async def _deliver(self, event: MotionEvent) -> None:
        key = event.idempotency_key
        payload = event.to_payload()
        last_error = ""

        for attempt in range(1, self.policy.max_attempts + 1):
            self.stats.attempts += 1
            try:
                receipt = await self.transport.send(payload)
            except TransportError as e:
                last_error = str(e)
                if not e.retryable:
                    self._reject(event, e)
                    return
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if receipt.duplicate:
                    self.stats.duplicates += 1
                    dispatch_attempts_total.labels(outcome="duplicate").inc()
                else:
                    dispatch_attempts_total.labels(outcome="delivered").inc()
                self.stats.delivered += 1
                dispatch_events_total.labels(outcome="delivered").inc()
                logger.debug(
                    "Event delivered",
                    device_id=event.device_id,
                    idempotency_key=key,
                    record_id=receipt.record_id,
                    attempt=attempt,
                )
                return

            dispatch_attempts_total.labels(outcome="retryable_error").inc()
            if attempt < self.policy.max_attempts:
                delay = self.policy.backoff(attempt)
                logger.warning(
                    "Delivery attempt failed, retrying",
                    device_id=event.device_id,
                    idempotency_key=key,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    retry_in_s=delay,
                    error=last_error,
                )
                await self._sleep(delay)

        failure = DeliveryExhausted(key, self.policy.max_attempts, last_error)
        self.stats.exhausted += 1
        dispatch_events_total.labels(outcome="exhausted").inc()
        logger.error(
            "Delivery exhausted, event dropped",
            device_id=event.device_id,
            idempotency_key=key,
            attempts=failure.attempts,
            error=last_error,
        )
        self._notify(event, failure)

    def _reject(self, event: MotionEvent, error: TransportError) -> None:
        self.stats.rejected += 1
        dispatch_attempts_total.labels(outcome="rejected").inc()
        dispatch_events_total.labels(outcome="rejected").inc()
        logger.error(
            "Event rejected by ingestion service, dropped",
            device_id=event.device_id,
            idempotency_key=event.idempotency_key,
            status=error.status,
            error=str(error),
        )
        self._notify(event, error)

    def _notify(self, event: MotionEvent, error: TelemetryError) -> None:
        if self._on_failure is None:
            return
        try:
            self._on_failure(event, error)
        except Exception as e:
            logger.error(
                "Failure handler raised",
                idempotency_key=event.idempotency_key,
                error=str(e),
            )
