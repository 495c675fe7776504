"""Async HTTP transport performing one upload attempt per call."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from fieldsync import __version__
from fieldsync.sync.exceptions import UploadError, UploadTimeoutError
from fieldsync.sync.store import AssetRecord


@dataclass
class UploadResponse:
    """Body returned by the upload endpoint."""

    status: str
    server_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and bool(self.server_id)


class AssetUploader:
    """Async HTTP uploader for captured assets.

    Uses httpx.AsyncClient for connection pooling. Each call to upload() is
    exactly one attempt: retry and backoff belong to the queue engine. The
    asset's client key is sent as an idempotency key so the server can
    recognise a retried upload as the same item.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the uploader.

        Args:
            server_url: Base URL of the upload API (e.g., http://localhost:3000/api)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (e.g. httpx.MockTransport)
        """
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={
                "User-Agent": f"fieldsync/{__version__}",
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def upload(self, asset: AssetRecord) -> UploadResponse:
        """Upload one asset to the server.

        Args:
            asset: The reserved asset record

        Returns:
            UploadResponse parsed from the server body

        Raises:
            UploadTimeoutError: If the request timed out
            UploadError: On connection errors, non-2xx responses or an unreadable body
        """
        payload = self._read_payload(asset)
        files = {"file": (asset.filename, payload, asset.mime_type)}
        data = {
            "clientKey": asset.client_key,
            "filename": asset.filename,
            "mimeType": asset.mime_type,
            "timestamp": str(int(asset.captured_at.timestamp() * 1000)),
            "latitude": "" if asset.latitude is None else str(asset.latitude),
            "longitude": "" if asset.longitude is None else str(asset.longitude),
            "category": asset.category,
        }
        if asset.user_id is not None:
            data["userId"] = str(asset.user_id)

        try:
            response = await self._client.post(
                f"{self.server_url}/assets/upload",
                files=files,
                data=data,
                headers={"Idempotency-Key": asset.client_key},
            )
        except httpx.TimeoutException as e:
            raise UploadTimeoutError(f"Upload timeout: {e}") from e
        except httpx.ConnectError as e:
            raise UploadError(f"Connection error: {e}") from e
        except httpx.HTTPError as e:
            raise UploadError(f"HTTP error: {e}") from e

        if not response.is_success:
            raise UploadError(
                f"Upload failed: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body: dict[str, Any] = response.json()
        except json.JSONDecodeError as e:
            raise UploadError("Upload response was not valid JSON") from e

        server_id = body.get("serverId") or body.get("server_id") or body.get("id")
        return UploadResponse(
            status=str(body.get("status", "error")),
            server_id=str(server_id) if server_id is not None else None,
        )

    def _read_payload(self, asset: AssetRecord) -> bytes:
        """Return the asset bytes, from the record or from its local URI."""
        if asset.data is not None:
            return asset.data
        if asset.uri:
            path = Path(asset.uri.removeprefix("file://"))
            try:
                return path.read_bytes()
            except OSError as e:
                raise UploadError(f"Cannot read payload {path}: {e}") from e
        raise UploadError(f"Asset {asset.id} has no payload")

    async def check_server(self) -> bool:
        """Check if the server is available.

        Returns:
            True if server responds to health check, False otherwise
        """
        try:
            response = await self._client.get(
                f"{self.server_url}/health",
                timeout=httpx.Timeout(5.0),
            )
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> "AssetUploader":
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        await self.close()
