"""HTTP transport from the device agent to the ingestion service."""

from typing import Any, Protocol

import aiohttp
import structlog
from pydantic import BaseModel

from ..errors import TransportError

logger = structlog.get_logger(__name__)

# Statuses worth retrying besides 5xx
_RETRYABLE_STATUSES = {408, 425, 429}


class DeliveryReceipt(BaseModel):
    """Acknowledgement returned by the ingestion service."""

    record_id: int | None = None
    duplicate: bool = False


class Transport(Protocol):
    async def send(self, payload: dict[str, Any]) -> DeliveryReceipt: ...


class HttpTransport:
    """Async client posting telemetry to ``POST /sensor-data``.

    Raises ``TransportError`` for every failed attempt; ``retryable`` tells
    the dispatcher whether another attempt can help.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        endpoint: str = "/sensor-data",
        device_id: str | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Base URL of the ingestion service
            timeout: Total request timeout in seconds
            endpoint: Ingestion path appended to ``base_url``
            device_id: Optional device identifier for the User-Agent header
        """
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.device_id = device_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

        logger.info("HTTP transport initialized", base_url=self.base_url)

    async def __aenter__(self) -> "HttpTransport":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> None:
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                connector=aiohttp.TCPConnector(limit=100),
                headers={"User-Agent": f"motion-telemetry-device/{self.device_id or 'unknown'}"},
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def send(self, payload: dict[str, Any]) -> DeliveryReceipt:
        await self._ensure_session()
        url = f"{self.base_url}{self.endpoint}"

        try:
            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    body = await response.json()
                    return DeliveryReceipt(
                        record_id=body.get("recordId"),
                        duplicate=bool(body.get("duplicate", False)),
                    )

                response_text = await response.text()
                retryable = response.status >= 500 or response.status in _RETRYABLE_STATUSES
                raise TransportError(
                    f"ingestion service returned {response.status}: {response_text[:200]}",
                    retryable=retryable,
                    status=response.status,
                )
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TransportError(
                f"{type(e).__name__}: {e}",
                retryable=True,
            ) from e
