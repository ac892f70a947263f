"""Unit tests for the event dispatcher and retry policy."""

import asyncio
from collections import defaultdict
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from motion_telemetry.device.dispatcher import Dispatcher, RetryPolicy
from motion_telemetry.device.transport import DeliveryReceipt
from motion_telemetry.errors import DeliveryExhausted, TransportError
from tests.test_helpers import make_event


class ScriptedTransport:
    """Transport returning queued outcomes, then acknowledging everything."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.sent: list[dict] = []
        self.in_flight: dict[str, int] = defaultdict(int)
        self.max_in_flight: dict[str, int] = defaultdict(int)

    async def send(self, payload):
        device_id = payload["deviceId"]
        self.in_flight[device_id] += 1
        self.max_in_flight[device_id] = max(
            self.max_in_flight[device_id], self.in_flight[device_id]
        )
        try:
            await asyncio.sleep(0)
            self.sent.append(payload)
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if isinstance(outcome, Exception):
                raise outcome
            return outcome or DeliveryReceipt(record_id=len(self.sent))
        finally:
            self.in_flight[device_id] -= 1


class BlockingTransport:
    """Transport that never answers until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls = 0

    async def send(self, payload):
        self.calls += 1
        await self.release.wait()
        return DeliveryReceipt(record_id=self.calls)


def retryable(message: str = "connection refused") -> TransportError:
    return TransportError(message, retryable=True)


@pytest.fixture()
def policy():
    return RetryPolicy(base_delay_ms=100, max_delay_ms=10_000, max_attempts=3)


@pytest.fixture()
def sleep():
    return AsyncMock()


class TestRetryPolicy:
    """Test backoff computation."""

    def test_exponential_backoff(self, policy):
        assert policy.backoff(1) == pytest.approx(0.1)
        assert policy.backoff(2) == pytest.approx(0.2)
        assert policy.backoff(3) == pytest.approx(0.4)

    def test_backoff_capped(self):
        policy = RetryPolicy(base_delay_ms=100, max_delay_ms=250, max_attempts=10)
        assert policy.backoff(5) == pytest.approx(0.25)

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            RetryPolicy(base_delay_ms=100, max_delay_ms=1000, max_attempts=0)

    def test_max_delay_not_below_base(self):
        with pytest.raises(ValidationError):
            RetryPolicy(base_delay_ms=500, max_delay_ms=100, max_attempts=3)


class TestDelivery:
    """Test successful and retried delivery."""

    @pytest.mark.asyncio()
    async def test_submit_returns_immediately(self, policy, sleep):
        transport = BlockingTransport()
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        result = dispatcher.submit(make_event())

        assert result.accepted is True
        assert result.reason is None
        assert result.idempotency_key == make_event().idempotency_key
        transport.release.set()
        await dispatcher.close()

    @pytest.mark.asyncio()
    async def test_delivers_payload(self, policy, sleep):
        transport = ScriptedTransport()
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        dispatcher.submit(make_event(ms=0))
        await dispatcher.join()

        assert len(transport.sent) == 1
        assert transport.sent[0]["kind"] == "anomaly"
        assert dispatcher.stats.delivered == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_retries_until_acknowledged(self, policy, sleep):
        transport = ScriptedTransport(retryable(), retryable())
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert len(transport.sent) == 3
        assert dispatcher.stats.delivered == 1
        assert dispatcher.stats.exhausted == 0
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio()
    async def test_duplicate_acknowledgement_counts_as_delivered(self, policy, sleep):
        transport = ScriptedTransport(DeliveryReceipt(record_id=7, duplicate=True))
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert dispatcher.stats.delivered == 1
        assert dispatcher.stats.duplicates == 1

    @pytest.mark.asyncio()
    async def test_same_idempotency_key_on_every_attempt(self, policy, sleep):
        transport = ScriptedTransport(retryable())
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert transport.sent[0]["eventId"] == transport.sent[1]["eventId"]

    @pytest.mark.asyncio()
    async def test_unexpected_errors_are_retried(self, policy, sleep):
        transport = ScriptedTransport(RuntimeError("boom"))
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert len(transport.sent) == 2
        assert dispatcher.stats.delivered == 1


class TestRetryExhaustion:
    """Test dropping events once the retry budget is spent."""

    @pytest.mark.asyncio()
    async def test_three_attempts_then_delivery_exhausted(self, policy, sleep):
        transport = ScriptedTransport(retryable(), retryable(), retryable(), retryable())
        on_failure = MagicMock()
        dispatcher = Dispatcher(transport, policy, on_failure=on_failure, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert len(transport.sent) == 3
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.1, 0.2])
        assert dispatcher.stats.exhausted == 1
        assert dispatcher.stats.delivered == 0

        on_failure.assert_called_once()
        event, error = on_failure.call_args.args
        assert isinstance(error, DeliveryExhausted)
        assert error.attempts == 3
        assert error.idempotency_key == event.idempotency_key

    @pytest.mark.asyncio()
    async def test_single_attempt_policy(self, sleep):
        transport = ScriptedTransport(retryable())
        policy = RetryPolicy(base_delay_ms=100, max_delay_ms=100, max_attempts=1)
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert len(transport.sent) == 1
        assert dispatcher.stats.exhausted == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_failing_handler_does_not_stop_worker(self, policy, sleep):
        transport = ScriptedTransport(retryable(), retryable(), retryable())
        on_failure = MagicMock(side_effect=RuntimeError("handler bug"))
        dispatcher = Dispatcher(transport, policy, on_failure=on_failure, sleep=sleep)

        dispatcher.submit(make_event(ms=0))
        dispatcher.submit(make_event(ms=1))
        await dispatcher.join()

        assert dispatcher.stats.exhausted == 1
        assert dispatcher.stats.delivered == 1


class TestRejection:
    """Test non-retryable responses."""

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("status_code", [400, 422])
    async def test_invalid_shape_not_retried(self, policy, sleep, status_code):
        rejection = TransportError("invalid", retryable=False, status=status_code)
        transport = ScriptedTransport(rejection)
        on_failure = MagicMock()
        dispatcher = Dispatcher(transport, policy, on_failure=on_failure, sleep=sleep)

        dispatcher.submit(make_event())
        await dispatcher.join()

        assert len(transport.sent) == 1
        assert dispatcher.stats.rejected == 1
        sleep.assert_not_awaited()
        on_failure.assert_called_once()
        assert on_failure.call_args.args[1] is rejection


class TestOrdering:
    """Test per-device FIFO and serialization."""

    @pytest.mark.asyncio()
    async def test_fifo_per_device_despite_retries(self, policy, sleep):
        transport = ScriptedTransport(retryable())
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        events = [make_event(ms=i * 100) for i in range(5)]
        for event in events:
            dispatcher.submit(event)
        await dispatcher.join()

        delivered = [p["eventId"] for p in transport.sent[1:]]
        assert delivered == [e.idempotency_key for e in events]

    @pytest.mark.asyncio()
    async def test_one_in_flight_per_device(self, policy, sleep):
        transport = ScriptedTransport()
        dispatcher = Dispatcher(transport, policy, sleep=sleep)

        for i in range(5):
            dispatcher.submit(make_event(device_id="a", ms=i))
            dispatcher.submit(make_event(device_id="b", ms=i))
        await dispatcher.join()

        assert transport.max_in_flight["a"] == 1
        assert transport.max_in_flight["b"] == 1
        assert len(transport.sent) == 10


class TestBackpressure:
    """Test queue bounds and shutdown."""

    @pytest.mark.asyncio()
    async def test_queue_full(self, policy, sleep):
        transport = BlockingTransport()
        dispatcher = Dispatcher(transport, policy, queue_max=1, sleep=sleep)

        first = dispatcher.submit(make_event(ms=0))
        second = dispatcher.submit(make_event(ms=1))

        assert first.accepted is True
        assert second.accepted is False
        assert second.reason == "queue_full"
        assert dispatcher.stats.dropped == 1

        transport.release.set()
        await dispatcher.close()

    @pytest.mark.asyncio()
    async def test_submit_after_close(self, policy, sleep):
        dispatcher = Dispatcher(ScriptedTransport(), policy, sleep=sleep)
        await dispatcher.close()

        result = dispatcher.submit(make_event())

        assert result.accepted is False
        assert result.reason == "closed"

    @pytest.mark.asyncio()
    async def test_close_drains_pending_events(self, policy, sleep):
        transport = ScriptedTransport()
        dispatcher = Dispatcher(transport, policy, sleep=sleep)
        for i in range(3):
            dispatcher.submit(make_event(ms=i))

        await dispatcher.close(drain=True, timeout=1.0)

        assert len(transport.sent) == 3
        assert dispatcher.stats.cancelled == 0

    @pytest.mark.asyncio()
    async def test_close_drops_stuck_events(self, policy, sleep):
        transport = BlockingTransport()
        dispatcher = Dispatcher(transport, policy, sleep=sleep)
        dispatcher.submit(make_event(ms=0))
        dispatcher.submit(make_event(ms=1))

        await dispatcher.close(drain=True, timeout=0.05)

        assert transport.calls == 1
        assert dispatcher.stats.cancelled == 2
        assert dispatcher.pending() == 0

    def test_rejects_empty_queue(self, policy):
        with pytest.raises(ValueError, match="queue_max"):
            Dispatcher(ScriptedTransport(), policy, queue_max=0)
