"""Local cache mirror for GET requests.

Two strategies, chosen by URL:

- GitHub API host: network-first. Fresh data wins; the cached copy is only
  served when the network call fails, and the failure is re-raised when
  there is no cached copy.
- Same-origin static assets: cache-first with a freshness window. Stale or
  missing entries are re-fetched; on network failure a stale entry is
  served, or a synthetic 503 when nothing is cached.

Only 200 responses are stored. Freshness timestamps live in a side map
keyed by URL, separate from the stored responses.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

import httpx

from .errors import TransientNetworkError

logger = logging.getLogger("eventcall.cache")

__all__ = ["CacheMirror"]

FetchFn = Callable[[str, str], Awaitable[httpx.Response]]

# Failures that trigger a cache fallback
_NETWORK_ERRORS = (httpx.TransportError, TransientNetworkError)


class CacheMirror:
    """In-memory response cache keyed by URL.

    Attributes:
        duration_seconds: Freshness window for cache-first entries
        api_host: Host served network-first
        origin: Page origin; only same-origin GETs are served cache-first
        max_entries: Stored responses kept; the least recently stored is evicted first
    """

    def __init__(
        self,
        fetch: FetchFn | None = None,
        clock=time.time,
        duration_seconds: float = 300,
        api_host: str = "api.github.com",
        origin: str | None = None,
        max_entries: int = 256,
    ) -> None:
        """Initialize cache.

        Args:
            fetch: Coroutine function (method, url) -> httpx.Response
            clock: Wall clock in seconds (injectable for tests)
            duration_seconds: Freshness window
            api_host: Host served network-first
            origin: Same-origin scheme://host for static assets (None allows any)
            max_entries: Size cap for the response store
        """
        self._fetch = fetch
        self._clock = clock
        self.duration_seconds = duration_seconds
        self.api_host = api_host
        self.origin = origin.rstrip("/") if origin else None
        self.max_entries = max_entries
        self._responses: dict[str, httpx.Response] = {}
        self._timestamps: dict[str, float] = {}

    @classmethod
    def from_config(cls, config, fetch: FetchFn | None = None) -> "CacheMirror":
        return cls(
            fetch,
            duration_seconds=config.cache_duration_seconds,
            origin=config.page_origin,
            max_entries=config.cache_max_entries,
        )

    def bind(self, fetch: FetchFn) -> None:
        """Set the network fetch function if none was given."""
        if self._fetch is None:
            self._fetch = fetch

    def __len__(self) -> int:
        return len(self._responses)

    def clear(self) -> None:
        """Empty the response store and the timestamp map."""
        self._responses.clear()
        self._timestamps.clear()
        logger.debug("cache_cleared")

    async def request(self, method: str, url: str) -> httpx.Response:
        """Route a request through the matching strategy."""
        if self._fetch is None:
            raise RuntimeError("CacheMirror has no fetch function bound")

        parts = urlsplit(url)
        if parts.hostname == self.api_host:
            if method.upper() == "GET":
                return await self._network_first(url)
            return await self._fetch(method, url)

        if method.upper() == "GET" and self._same_origin(parts):
            return await self._cache_first(url)

        return await self._fetch(method, url)

    async def get(self, url: str) -> httpx.Response:
        return await self.request("GET", url)

    def _same_origin(self, parts) -> bool:
        if self.origin is None:
            return True
        return f"{parts.scheme}://{parts.netloc}" == self.origin

    def _is_fresh(self, url: str) -> bool:
        stored_at = self._timestamps.get(url)
        if stored_at is None:
            return False
        return (self._clock() - stored_at) < self.duration_seconds

    def _store(self, url: str, response: httpx.Response) -> None:
        if response.status_code != 200:
            return
        self._responses.pop(url, None)
        self._responses[url] = response
        self._timestamps[url] = self._clock()
        while len(self._responses) > self.max_entries:
            oldest = next(iter(self._responses))
            del self._responses[oldest]
            self._timestamps.pop(oldest, None)
            logger.debug("cache_evicted", extra={"url": oldest})

    async def _cache_first(self, url: str) -> httpx.Response:
        cached = self._responses.get(url)
        if cached is not None and self._is_fresh(url):
            logger.debug("cache_hit", extra={"url": url})
            return cached

        try:
            response = await self._fetch("GET", url)
        except _NETWORK_ERRORS as e:
            if cached is not None:
                logger.info("cache_serving_stale", extra={"url": url, "error": str(e)})
                return cached
            logger.warning("cache_offline", extra={"url": url, "error": str(e)})
            return httpx.Response(
                503,
                text="Offline - content not available",
                headers={"Content-Type": "text/plain"},
            )

        self._store(url, response)
        return response

    async def _network_first(self, url: str) -> httpx.Response:
        try:
            response = await self._fetch("GET", url)
        except _NETWORK_ERRORS as e:
            cached = self._responses.get(url)
            if cached is not None:
                logger.info("cache_fallback", extra={"url": url, "error": str(e)})
                return cached
            raise

        self._store(url, response)
        return response
