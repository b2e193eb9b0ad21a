"""
Metric fetchers.

Example:
    >>> from dashsync.fetchers import HttpFetcherPool
"""

from dashsync.fetchers.http import HttpFetcherPool, HttpMetricFetcher

__all__: list[str] = [
    "HttpFetcherPool",
    "HttpMetricFetcher",
]
