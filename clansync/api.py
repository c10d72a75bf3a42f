"""
Clan Sync - Backend API Client

Async HTTP client for the read endpoints the sync coordinator consumes.

Features:
- Async HTTP client with connection pooling
- Exponential backoff retry on network errors and 5xx responses
- Backend envelope (``success``/``data``/``message``) normalization
- Per-request timeout override (short health probe, longer data fetches)
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from .config import SyncConfig
from .exceptions import AuthenticationError, NetworkError

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
GLOBAL_STATS_PATH = "/cache/global"
FEDERATIONS_PATH = "/federations"
CLANS_PATH = "/clans"


@dataclass
class ApiResponse:
    """Normalized result of a backend read."""
    success: bool
    data: Any = None
    message: Optional[str] = None
    status_code: Optional[int] = None


class RemoteDataSource(Protocol):
    """Read operations the sync coordinator needs from the backend."""

    async def get(
        self,
        path: str,
        *,
        require_auth: bool = True,
        timeout: Optional[float] = None,
        params: Optional[dict[str, str]] = None,
        retry: bool = True,
    ) -> ApiResponse: ...


class ApiClient:
    """httpx-based implementation of :class:`RemoteDataSource`."""

    def __init__(
        self,
        config: SyncConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.sync_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if not self.config.api_token:
            raise AuthenticationError("No API token configured for authenticated request")
        return {"Authorization": f"Bearer {self.config.api_token}"}

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = self.config.base_retry_delay * (2 ** attempt)
        # Add jitter (0-25% of delay)
        jitter = delay * 0.25 * random.random()
        return min(delay + jitter, self.config.max_retry_delay)

    @staticmethod
    def _to_response(response: httpx.Response) -> ApiResponse:
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and "success" in body:
            return ApiResponse(
                success=body.get("success") is True,
                data=body.get("data"),
                message=body.get("message"),
                status_code=response.status_code,
            )

        if response.is_success:
            return ApiResponse(success=True, data=body, status_code=response.status_code)

        message = body.get("message") if isinstance(body, dict) else None
        return ApiResponse(
            success=False,
            message=message or f"HTTP {response.status_code}",
            status_code=response.status_code,
        )

    async def get(
        self,
        path: str,
        *,
        require_auth: bool = True,
        timeout: Optional[float] = None,
        params: Optional[dict[str, str]] = None,
        retry: bool = True,
    ) -> ApiResponse:
        """
        Perform a GET against the backend.

        Args:
            path: Endpoint path relative to ``api_base_url``
            require_auth: Attach the bearer token
            timeout: Seconds; defaults to ``sync_timeout``
            params: Optional query parameters
            retry: Retry network errors and 5xx responses with backoff

        Returns:
            Normalized ApiResponse. 4xx responses other than 401 come back
            with ``success=False`` rather than raising.
        """
        headers = self._auth_headers() if require_auth else {}
        client = await self._get_http_client()
        url = f"{self.config.api_base_url}{path}"
        request_timeout = httpx.Timeout(timeout or self.config.sync_timeout)
        attempts = self.config.max_retries if retry else 1

        last_error: Optional[str] = None

        for attempt in range(attempts):
            try:
                response = await client.get(
                    url,
                    headers=headers,
                    params=params,
                    timeout=request_timeout,
                )
            except httpx.RequestError as e:
                last_error = f"Network error on {path}: {e}"
            else:
                if response.status_code == 401:
                    raise AuthenticationError(f"Authentication failed for {path}")
                if response.status_code < 500:
                    return self._to_response(response)
                last_error = f"Server error {response.status_code} on {path}"

            if attempt + 1 < attempts:
                wait_time = self._calculate_backoff(attempt)
                logger.warning(f"{last_error}, retry in {wait_time:.2f}s")
                await asyncio.sleep(wait_time)

        raise NetworkError(last_error or f"Request to {path} failed")
