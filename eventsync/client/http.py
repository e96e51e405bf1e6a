"""Shared HTTP plumbing for the eventsync clients."""

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class RemoteClient:
    """Base for clients talking to an eventsync server.

    Retries server errors and connection failures with exponential backoff;
    client errors (4xx) are returned immediately.
    """

    def __init__(
        self,
        remote_url: str | None,
        tenant_id: str,
        max_retries: int = 3,
        timeout: float = 30.0,
        backoff_seconds: float = 1.0,
    ):
        """Initialize the client.

        Args:
            remote_url: Base URL of the server (e.g., "http://sync:4000").
            tenant_id: Tenant sent in the X-Tenant-Id header.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            backoff_seconds: Initial delay between attempts.
        """
        self.remote_url = remote_url
        self.tenant_id = tenant_id
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._consecutive_failures = 0

    def set_remote_url(self, url: str) -> None:
        """Set or update the remote URL."""
        self.remote_url = url
        logger.info(f"Remote URL set to {url}")

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to remote_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.remote_url:
            return None, "No remote URL configured"

        url = f"{self.remote_url.rstrip('/')}{path}"
        headers = {"X-Tenant-Id": self.tenant_id}
        backoff = self.backoff_seconds
        offline = False

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(
                            url, params=params, headers=headers
                        )
                    elif method == "POST":
                        response = await client.post(
                            url, json=json_data, params=params, headers=headers
                        )
                    else:
                        return None, f"Unsupported method: {method}"

                    offline = False

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    offline = True
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    offline = False
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        if offline:
            return None, f"Connection failed after {self.max_retries} attempts"
        return None, f"Max retries ({self.max_retries}) exceeded"
