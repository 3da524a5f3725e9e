"""Shared async HTTP client for task source backends.

Wraps ``httpx.AsyncClient`` with:
- Retry with exponential backoff and full jitter on 408/5xx and transport
  errors
- Rate limit detection (429, or 403 with ``x-ratelimit-remaining: 0``)
- Link-header pagination

Every failure that survives the retries surfaces as SourceUnavailable,
which callers treat as recoverable.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from src.workflow.errors import SourceUnavailable


logger = logging.getLogger(__name__)


class HttpSourceClient:
    """Async HTTP client with retry logic, shared by the remote adapters.

    Attributes:
        source: Source name used in logs and errors ("github", "gitlab").
        base_url: API base URL.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> client = HttpSourceClient("github", "https://api.github.com",
        ...     headers={"Authorization": "Bearer ghp_xxx"})
        >>> async with client:
        ...     issues = await client.get_paginated("/repos/o/r/issues")
    """

    RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}
    MAX_PAGES = 10

    def __init__(
        self,
        source: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.source = source
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpSourceClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter (attempt is 0-indexed)."""
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    def _rate_limit_error(self, response: httpx.Response) -> SourceUnavailable:
        retry_after: Optional[int] = None
        reset = response.headers.get("x-ratelimit-reset")
        if reset is not None and reset.isdigit():
            retry_after = max(0, int(reset) - int(time.time()))
        header = response.headers.get("retry-after")
        if header is not None and header.isdigit():
            retry_after = int(header)

        logger.warning(
            "Task source rate limit exceeded",
            extra={"source": self.source, "retry_after": retry_after},
        )
        return SourceUnavailable(
            f"{self.source} rate limit exceeded",
            source=self.source,
            details={"status_code": response.status_code, "retry_after": retry_after},
        )

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return (
            response.status_code == 403
            and response.headers.get("x-ratelimit-remaining") == "0"
        )

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Raises:
            SourceUnavailable: On rate limiting, a non-retryable error
                status, or once all retries are exhausted.
        """
        last_error: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method, url=path, params=params, json=json_data
                )
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "source": self.source,
                            "error": last_error,
                            "attempt": attempt + 1,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if self._is_rate_limited(response):
                raise self._rate_limit_error(response)

            if response.status_code in self.RETRYABLE_STATUS_CODES:
                last_error = f"HTTP {response.status_code}"
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Retryable error from task source",
                        extra={
                            "source": self.source,
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                logger.error(
                    "Task source API error",
                    extra={
                        "source": self.source,
                        "status_code": response.status_code,
                        "path": path,
                        "response_body": response.text[:500],
                    },
                )
                raise SourceUnavailable(
                    f"{self.source} API error: {response.status_code}",
                    source=self.source,
                    details={"status_code": response.status_code, "path": path},
                )

            return response

        logger.error(
            "Task source request failed after all retries",
            extra={"source": self.source, "path": path, "error": last_error},
        )
        raise SourceUnavailable(
            f"{self.source} request to {path} failed after "
            f"{self.max_retries + 1} attempts: {last_error}",
            source=self.source,
        )

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return _decode(await self.request("GET", path, params=params), self.source)

    async def post_json(self, path: str, json_data: Dict[str, Any]) -> Any:
        return _decode(await self.request("POST", path, json_data=json_data), self.source)

    async def get_paginated(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> List[Any]:
        """GET a list endpoint, following ``Link: rel="next"`` headers."""
        items: List[Any] = []
        url: Optional[str] = path
        page_params = params
        for _ in range(max_pages or self.MAX_PAGES):
            if url is None:
                break
            response = await self.request("GET", url, params=page_params)
            page = _decode(response, self.source)
            if not isinstance(page, list):
                raise SourceUnavailable(
                    f"{self.source} returned a non-list page for {path}",
                    source=self.source,
                )
            items.extend(page)
            next_link = response.links.get("next", {}).get("url")
            url = next_link
            page_params = None
        return items


def _decode(response: httpx.Response, source: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise SourceUnavailable(
            f"{source} returned invalid JSON", source=source
        ) from e
