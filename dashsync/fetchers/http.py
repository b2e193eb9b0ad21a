"""
HTTP metric fetchers.

Each dashboard metric is one JSON endpoint under the dashboard API. A
fetcher is a zero-argument coroutine returning the decoded body, which is
what the scheduler and coordinator expect.

Endpoints (defaults):
    GET {base_url}/dashboard/quick-stats
    GET {base_url}/dashboard/tasks-metrics
    GET {base_url}/dashboard/leads-metrics
    GET {base_url}/dashboard/financial-metrics
    GET {base_url}/dashboard/system-metrics
    GET {base_url}/dashboard/notifications

Errors:
    Status >= 400, aiohttp client errors and timeouts are raised as
    ConnectionError. The scheduler counts them as transient failures.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp
import structlog

from dashsync.config.models import FetcherConfig, MetricConfig

logger = structlog.get_logger(__name__)

USER_AGENT = "dashsync/1.0"


class HttpFetcherPool:
    """
    Shared aiohttp session for every metric fetcher.

    Attributes:
        base_url: API base URL without trailing slash.
        timeout_seconds: Total timeout per request.

    Example:
        >>> pool = HttpFetcherPool(FetcherConfig(base_url="http://localhost:8080/api"))
        >>> fetchers = pool.build(config.metrics)
        >>> stats = await fetchers["quick_stats"]()
        >>> await pool.close()
    """

    def __init__(self, config: FetcherConfig):
        """
        Initialize the pool. The session is created on first request.

        Args:
            config: Base URL, timeout and extra headers.
        """
        self.base_url = config.base_url.rstrip("/")
        self.timeout_seconds = config.timeout_seconds
        self._headers = {"User-Agent": USER_AGENT, **config.headers}
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info(
            "http_fetcher_pool_initialized",
            base_url=self.base_url,
            timeout_seconds=self.timeout_seconds,
        )

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session is created."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._headers)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("http_fetcher_pool_closed", base_url=self.base_url)

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def get_json(self, path: str) -> Any:
        """
        GET a path under the base URL and decode the JSON body.

        Args:
            path: Endpoint path, e.g. "/dashboard/quick-stats".

        Returns:
            Any: Decoded JSON body.

        Raises:
            ConnectionError: If the request fails, times out or returns an
                error status.
        """
        session = await self._ensure_session()
        url = self.url_for(path)

        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(
                        "http_request_failed",
                        url=url,
                        status=response.status,
                        error=error_text,
                    )
                    raise ConnectionError(
                        f"Request failed with status {response.status}: {error_text}"
                    )

                return await response.json()

        except aiohttp.ClientError as e:
            logger.error("http_client_error", url=url, error=str(e))
            raise ConnectionError(f"Request failed: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error("http_timeout", url=url, timeout=self.timeout_seconds)
            raise ConnectionError(f"Request timeout after {self.timeout_seconds}s") from e

    def fetcher(self, path: str) -> "HttpMetricFetcher":
        """Fetcher for one path that shares this pool's session."""
        return HttpMetricFetcher(self.base_url, path, self.timeout_seconds, pool=self)

    def build(self, metrics: Dict[str, MetricConfig]) -> Dict[str, "HttpMetricFetcher"]:
        """
        Build one fetcher per metric.

        Args:
            metrics: Metric catalogue keyed by metric key.

        Returns:
            Dict[str, HttpMetricFetcher]: Fetcher per metric key.
        """
        return {key: self.fetcher(metric.path) for key, metric in metrics.items()}


class HttpMetricFetcher:
    """
    Zero-argument coroutine fetching one metric endpoint.

    Created by HttpFetcherPool.build() in the agent. A fetcher created
    without a pool owns a private one and must be closed.

    Example:
        >>> fetch = HttpMetricFetcher("http://localhost:8080/api", "/dashboard/quick-stats")
        >>> stats = await fetch()
        >>> await fetch.close()
    """

    def __init__(
        self,
        base_url: str,
        path: str,
        timeout_seconds: int = 10,
        pool: Optional[HttpFetcherPool] = None,
    ):
        self.path = path
        self._owns_pool = pool is None
        self._pool = pool or HttpFetcherPool(
            FetcherConfig(base_url=base_url, timeout_seconds=timeout_seconds)
        )

    @property
    def url(self) -> str:
        return self._pool.url_for(self.path)

    async def __call__(self) -> Any:
        return await self._pool.get_json(self.path)

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()

    def __repr__(self) -> str:
        """Return string representation."""
        return f"HttpMetricFetcher(url={self.url})"
