"""
Remote API Client

Posts batches of persisted readings to the remote ingestion API.

Distinguishes three outcomes for the upload scheduler:
- accepted: 2xx and the body does not say success=false
- rejected: any other HTTP response (raises UploadError)
- unreachable: any transport failure, e.g. connect, timeout or a dropped
  connection (raises RemoteUnavailableError)
"""

from dataclasses import dataclass

import httpx

from edgesync.common.config import DEFAULT_UPLOAD_TIMEOUT_S
from edgesync.common.exceptions import RemoteUnavailableError, UploadError
from edgesync.common.logging_setup import get_service_logger
from edgesync.common.timestamp import to_iso

logger = get_service_logger("upload.client")

BATCH_PATH = "/meter-readings/batch"


@dataclass
class UploadResponse:
    records_processed: int
    status_code: int


def reading_payload(row: dict) -> dict:
    """JSON record for one meter_reading row."""
    return {
        "id": row["id"],
        "meter_id": row["meter_id"],
        "element_id": row.get("element_id"),
        "timestamp": to_iso(row["timestamp"]),
        "data_point": row["data_point"],
        "value": row["value"],
        "unit": row.get("unit"),
    }


class RemoteApiClient:
    """
    Upload client for the remote ingestion API.

    Reuses one httpx.AsyncClient across uploads; call close() on shutdown.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_UPLOAD_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def upload_batch(self, api_key: str, tenant_id: int, rows: list[dict]) -> UploadResponse:
        """
        Upload one batch of readings.

        Raises:
            RemoteUnavailableError: API could not be reached
            UploadError: API answered but did not accept the batch
        """
        client = await self._get_client()
        url = f"{self.base_url}{BATCH_PATH}"

        try:
            response = await client.post(
                url,
                json={
                    "tenant_id": tenant_id,
                    "readings": [reading_payload(row) for row in rows],
                },
                headers={
                    "X-API-Key": api_key,
                    "Content-Type": "application/json",
                },
            )
        except httpx.TransportError as e:
            # No response was received, so nothing was accepted
            raise RemoteUnavailableError(f"{e.__class__.__name__}: {e}", target=url) from e

        if response.status_code >= 400:
            body = response.text[:500]
            raise UploadError(f"HTTP {response.status_code}: {body}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if isinstance(data, dict) and data.get("success") is False:
            raise UploadError(
                data.get("error") or data.get("message") or "API reported success=false",
                status_code=response.status_code,
            )

        processed = len(rows)
        if isinstance(data, dict):
            processed = data.get("recordsProcessed", data.get("records_processed", processed))

        return UploadResponse(records_processed=processed, status_code=response.status_code)
