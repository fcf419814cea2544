import asyncio
from typing import Any, Dict, Optional

import httpx
from httpx import HTTPStatusError, TimeoutException

from docflow.utils.exceptions import (
    PermanentProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    TransientProviderError,
)
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BaseLLMClient:
    """Base client for LLM API interactions.

    Handles common logic for HTTP requests, retries, timeout management
    and error logging. Failures surface as provider errors split into
    transient (timeouts, 429, 5xx, network) and permanent (other 4xx).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        provider: str,
        model: str,
        timeout: float = 60,
        max_retries: int = 1,
        retry_delay: float = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the LLM client.

        Args:
            api_key: API key for authentication
            base_url: Endpoint URL
            provider: Provider name used in error reports
            model: Model name used in error reports
            timeout: Request timeout in seconds
            max_retries: Maximum number of HTTP attempts. Defaults to one;
                failed rounds are retried by the stage engine instead.
            retry_delay: Base delay for exponential backoff
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url
        self.provider = provider
        self.model = model
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.transport = transport
        self.logger = LOGGER

    async def call_api(
        self,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """POST ``payload`` with retry logic.

        Args:
            payload: JSON payload
            headers: Headers replacing the default bearer authorization
            timeout: Per-request timeout override in seconds

        Returns:
            Parsed JSON response

        Raises:
            PermanentProviderError: Auth/config failures, not retried
            ProviderRateLimitError: Still rate limited after retries
            ProviderTimeoutError: Still timing out after retries
            TransientProviderError: Server or network errors after retries
        """
        request_headers = headers or {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        request_timeout = timeout or self.timeout

        self.logger.debug(
            f"Calling LLM API: {self.base_url}",
            extra={"provider": self.provider, "model": self.model, "timeout": request_timeout},
        )

        async with httpx.AsyncClient(timeout=request_timeout, transport=self.transport) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(self.base_url, headers=request_headers, json=payload)
                    response.raise_for_status()
                    return response.json()

                except HTTPStatusError as e:
                    await self._handle_http_error(e, attempt)

                except TimeoutException as e:
                    await self._handle_timeout_error(e, attempt)

                except httpx.HTTPError as e:
                    await self._handle_network_error(e, attempt)

        raise TransientProviderError(
            f"Failed to call {self.provider} after {self.max_retries} attempts",
            provider=self.provider,
            model=self.model,
        )

    async def _handle_http_error(self, error: HTTPStatusError, attempt: int) -> None:
        status_code = error.response.status_code
        error_body = error.response.text

        self.logger.warning(
            f"API HTTP error (Attempt {attempt + 1}/{self.max_retries})",
            extra={
                "provider": self.provider,
                "status_code": status_code,
                "error_body": error_body[:500],
            },
        )

        # Don't retry on client errors (4xx) unless it's rate limiting (429)
        if 400 <= status_code < 500 and status_code != 429:
            raise PermanentProviderError(
                f"{self.provider} client error {status_code}: {error_body[:200]}",
                provider=self.provider,
                model=self.model,
                original_error=error,
            ) from error

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
            return

        error_cls = ProviderRateLimitError if status_code == 429 else TransientProviderError
        raise error_cls(
            f"{self.provider} HTTP error {status_code} after retries",
            provider=self.provider,
            model=self.model,
            original_error=error,
        ) from error

    async def _handle_timeout_error(self, error: TimeoutException, attempt: int) -> None:
        self.logger.warning(
            f"API Timeout (Attempt {attempt + 1}/{self.max_retries})",
            extra={"provider": self.provider},
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
            return

        raise ProviderTimeoutError(
            f"{self.provider} timed out after {self.max_retries} attempts",
            provider=self.provider,
            model=self.model,
            original_error=error,
        ) from error

    async def _handle_network_error(self, error: httpx.HTTPError, attempt: int) -> None:
        self.logger.warning(
            f"API network error (Attempt {attempt + 1}/{self.max_retries})",
            extra={"provider": self.provider, "error": str(error)},
        )

        if attempt < self.max_retries - 1:
            await self._wait_before_retry(attempt)
            return

        raise TransientProviderError(
            f"{self.provider} network error: {error}",
            provider=self.provider,
            model=self.model,
            original_error=error,
        ) from error

    async def _wait_before_retry(self, attempt: int) -> None:
        """Exponential backoff wait."""
        await asyncio.sleep(self.retry_delay * (2 ** attempt))
