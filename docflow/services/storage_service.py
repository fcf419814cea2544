"""Read-only access to document bytes in Supabase storage."""

from typing import Optional

import httpx

from docflow.config import StorageSettings, settings
from docflow.utils.exceptions import StorageError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class StorageService:
    """Fetches uploaded objects; upload and bucket lifecycle live elsewhere."""

    def __init__(
        self,
        storage_settings: Optional[StorageSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = storage_settings or settings.storage
        self.url = config.url.rstrip("/")
        self.base_api_url = f"{self.url}/storage/v1"
        self.timeout = config.timeout_seconds
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {config.service_key}",
            "apikey": config.service_key,
        }

    async def get_object(self, bucket: str, key: str) -> bytes:
        """Download an object.

        Args:
            bucket: Bucket name.
            key: Object path within the bucket.

        Returns:
            The object's bytes.

        Raises:
            StorageError: ``transient`` is set for timeouts, network errors
                and 5xx responses; a missing object is permanent.
        """
        url = f"{self.base_api_url}/object/{bucket}/{key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, headers=self.headers)
        except httpx.HTTPError as e:
            LOGGER.warning(
                f"Storage request failed: {e}",
                extra={"bucket": bucket, "key": key},
            )
            raise StorageError(f"Storage request failed: {e}", transient=True, original_error=e) from e

        if response.status_code == 200:
            return response.content

        LOGGER.error(
            "Failed to fetch object from storage",
            extra={"bucket": bucket, "key": key, "status_code": response.status_code},
        )
        raise StorageError(
            f"Object {bucket}/{key} could not be read (HTTP {response.status_code})",
            transient=response.status_code >= 500 or response.status_code == 429,
        )
