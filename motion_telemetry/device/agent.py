"""Device-side pipeline: sampler -> anomaly detector -> dispatcher."""

import asyncio
import signal
import sys
from collections.abc import Callable

import structlog

from ..config import DeviceSettings
from ..logging_setup import setup_logging
from ..models import Location
from .cooldown_state import JsonFileCooldownStateStore
from .detector import AnomalyDetector
from .dispatcher import Dispatcher
from .sampler import Sampler
from .sources import SimulatedSensorSource
from .transport import HttpTransport

logger = structlog.get_logger(__name__)

LocationProvider = Callable[[], Location | None]


class DeviceAgent:
    """Runs one device's pipeline until its sample stream ends or it is stopped."""

    def __init__(
        self,
        sampler: Sampler,
        detector: AnomalyDetector,
        dispatcher: Dispatcher,
        location_provider: LocationProvider | None = None,
    ) -> None:
        self.sampler = sampler
        self.detector = detector
        self.dispatcher = dispatcher
        self.location_provider = location_provider
        self.samples_seen = 0
        self.events_submitted = 0

    async def run(self) -> None:
        """Consume samples and hand detected events to the dispatcher."""
        logger.info("Device agent running", device_id=self.sampler.device_id)
        async with self.sampler.subscribe() as samples:
            async for sample in samples:
                self.samples_seen += 1
                location = self.location_provider() if self.location_provider else None
                event = self.detector.process(sample, location)
                if event is None:
                    continue
                result = self.dispatcher.submit(event)
                if result.accepted:
                    self.events_submitted += 1
        logger.info(
            "Sample stream ended",
            device_id=self.sampler.device_id,
            samples=self.samples_seen,
            events=self.events_submitted,
        )

    async def shutdown(self, drain_timeout: float | None = 10.0) -> None:
        await self.dispatcher.close(drain=True, timeout=drain_timeout)


async def _run_agent() -> None:
    config = DeviceSettings()
    setup_logging(
        "motion-telemetry-device",
        level=config.log_level,
        log_format=config.log_format,
        environment=config.environment,
    )

    cooldown_store = None
    if config.persist_cooldown_state:
        cooldown_store = JsonFileCooldownStateStore(config.cooldown_state_path)

    async with HttpTransport(
        config.ingest_base_url,
        timeout=config.request_timeout_s,
        device_id=config.device_id,
    ) as transport:
        agent = DeviceAgent(
            sampler=Sampler(
                SimulatedSensorSource(),
                config.device_id,
                interval_ms=config.sample_interval_ms,
                buffer_size=config.sample_buffer_size,
            ),
            detector=AnomalyDetector(config.detector_config(), cooldown_store),
            dispatcher=Dispatcher(
                transport,
                config.retry_policy(),
                queue_max=config.dispatch_queue_max,
            ),
        )

        run_task = asyncio.create_task(agent.run(), name="device_agent")
        stop_event = asyncio.Event()

        def signal_handler():
            logger.info("Received termination signal")
            stop_event.set()

        if sys.platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, signal_handler)

        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (run_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(run_task, stop_task, return_exceptions=True)
            await agent.shutdown()
            logger.info("Device agent stopped", device_id=config.device_id)


def main() -> None:
    """Console entry point for the device agent."""
    try:
        asyncio.run(_run_agent())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error("Fatal error in device agent", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
