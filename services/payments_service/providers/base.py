"""
Shared async HTTP plumbing for provider clients.

Every adapter talks to its provider through ``ProviderClient._request``,
which turns transport failures and non-2xx responses into
``ProviderError`` and, when the adapter enables it, retries the
retryable ones with exponential backoff.
"""

import asyncio
from typing import Any, Optional

import httpx
from libs.common.logging import get_logger
from services.payments_service.errors import ProviderError

logger = get_logger(__name__)


class ProviderClient:
    """Base class for provider API clients."""

    provider = "provider"
    # False for providers whose failures are never worth retrying (Plaid).
    errors_retryable = True

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict] = None,
        *,
        max_attempts: int = 1,
        retry_base_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[dict] = None,
        json_data: Optional[Any] = None,
        form_data: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make a request, retrying retryable failures up to ``max_attempts``."""
        attempt = 1
        while True:
            try:
                return await self._send(
                    method,
                    endpoint,
                    params=params,
                    json_data=json_data,
                    form_data=form_data,
                    headers=headers,
                )
            except ProviderError as exc:
                if not exc.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "%s %s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.provider,
                    method,
                    endpoint,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc.message,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _send(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[dict],
        json_data: Optional[Any],
        form_data: Optional[dict],
        headers: Optional[dict],
    ) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    endpoint,
                    params=params,
                    json=json_data,
                    data=form_data,
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise ProviderError(
                self.provider,
                f"Network error calling {endpoint}: {exc}",
                retryable=self.errors_retryable,
            ) from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = None

        if not response.is_success:
            logger.error(
                "%s API error: %s %s -> %s",
                self.provider,
                method,
                endpoint,
                response.status_code,
            )
            raise self._error_for(response, data if isinstance(data, dict) else {})

        if data is None:
            raise ProviderError(
                self.provider,
                f"Malformed response from {endpoint}",
                status_code=response.status_code,
            )
        return data

    def _error_message(self, data: dict) -> Optional[str]:
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message")
        return data.get("message") or (error if isinstance(error, str) else None)

    def _error_for(self, response: httpx.Response, data: dict) -> ProviderError:
        """Map a non-2xx response onto a ``ProviderError``."""
        status_code = response.status_code
        return ProviderError(
            self.provider,
            self._error_message(data) or f"HTTP {status_code}",
            status_code=status_code,
            response_data=data,
            retryable=self.errors_retryable
            and (status_code >= 500 or status_code == 429),
        )
