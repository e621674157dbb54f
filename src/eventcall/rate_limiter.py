"""Rate-limited request queue for GitHub API calls.

Every outbound GitHub request passes through RateLimiter.fetch(), which:

- groups requests into buckets by endpoint key (github_dispatch,
  github_issues, github_contents, default)
- admits requests per bucket in strict FIFO order, with a concurrency cap
  (default 1 in flight, so writes to one logical resource stay ordered)
- enforces a sliding quota window (max N requests per interval)
- attaches the current credential on every attempt
- reads X-RateLimit-Remaining and rotates credentials (or pauses the
  bucket until X-RateLimit-Reset) when quota is exhausted
- retries network failures, 5xx and 429 with exponential backoff + jitter

Buckets are independent; requests under different keys may interleave.
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from .config import ENDPOINT_CONTENTS, ENDPOINT_DEFAULT, ENDPOINT_DISPATCH, ENDPOINT_ISSUES
from .credentials import CredentialRotator
from .errors import ConfigurationError, RateLimitExhausted, TransientNetworkError
from .metrics import github_request_duration_seconds, github_requests_total, github_retries_total

logger = logging.getLogger("eventcall.rate_limiter")

__all__ = [
    "RateLimiter",
    "RequestDescriptor",
    "RetryPolicy",
    "endpoint_key_for",
]

# Timeout configuration
CONNECT_TIMEOUT = 5.0  # seconds
READ_TIMEOUT = 30.0  # seconds
WRITE_TIMEOUT = 5.0  # seconds
POOL_TIMEOUT = 5.0  # seconds


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a request.

    Attributes:
        max_attempts: Total attempts including the first
        base_delay_ms: Delay before the first retry; doubles each retry
        jitter: Add up to base_delay_ms / 2 of random delay
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    jitter: bool = True

    def backoff_ms(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), without jitter."""
        return self.base_delay_ms * (2 ** (attempt - 1))

    def delay_seconds(self, attempt: int) -> float:
        delay = self.backoff_ms(attempt)
        if self.jitter:
            delay += random.random() * (self.base_delay_ms / 2)
        return delay / 1000.0


CONTENTS_RETRY = RetryPolicy(max_attempts=5, base_delay_ms=800, jitter=True)
ISSUES_RETRY = RetryPolicy(max_attempts=5, base_delay_ms=1000, jitter=True)


@dataclass
class RequestDescriptor:
    """One outbound request, as queued by the limiter."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    params: dict[str, str] | None = None
    endpoint_key: str | None = None
    retry: RetryPolicy | None = None
    authenticate: bool = True
    context: str = "GitHub API call"


def endpoint_key_for(url: str) -> str:
    """Derive the rate-limit bucket from a GitHub API URL."""
    if "/issues" in url:
        return ENDPOINT_ISSUES
    if "/contents" in url or "/git/trees" in url or "/git/blobs" in url:
        return ENDPOINT_CONTENTS
    if "/dispatches" in url:
        return ENDPOINT_DISPATCH
    return ENDPOINT_DEFAULT


@dataclass
class _Bucket:
    """Admission state for one endpoint key."""

    key: str
    max_requests: int
    interval: float
    max_concurrency: int
    window: deque = field(default_factory=deque)
    waiters: deque = field(default_factory=deque)
    in_flight: int = 0
    blocked_until: float = 0.0


class RateLimiter:
    """FIFO, quota-windowed, retrying request queue.

    Example:
        >>> limiter = RateLimiter(credentials=CredentialRotator(["ghp_a", "ghp_b"]))
        >>> response = await limiter.fetch(
        ...     "POST",
        ...     "https://api.github.com/repos/o/r/dispatches",
        ...     json={"event_type": "submit_rsvp", "client_payload": {}},
        ... )
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        credentials: CredentialRotator | None = None,
        max_requests: int = 30,
        interval_seconds: float = 60.0,
        max_concurrency: int = 1,
        default_retry: RetryPolicy | None = None,
        max_reset_wait: float = 60.0,
        clock=time.monotonic,
    ) -> None:
        """Initialize limiter.

        Args:
            client: httpx client used as transport (created if omitted)
            credentials: Rotator supplying the Authorization token
            max_requests: Requests admitted per window per endpoint key
            interval_seconds: Window length
            max_concurrency: In-flight requests per endpoint key
            default_retry: Policy used when a request does not carry one
            max_reset_wait: Cap on pausing a bucket until X-RateLimit-Reset
            clock: Monotonic clock (injectable for tests)
        """
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=CONNECT_TIMEOUT,
                read=READ_TIMEOUT,
                write=WRITE_TIMEOUT,
                pool=POOL_TIMEOUT,
            ),
        )
        self.credentials = credentials
        self.max_requests = max_requests
        self.interval_seconds = interval_seconds
        self.max_concurrency = max_concurrency
        self.default_retry = default_retry or RetryPolicy()
        self.max_reset_wait = max_reset_wait
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    @classmethod
    def from_config(
        cls,
        config,
        credentials: CredentialRotator | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "RateLimiter":
        return cls(
            client=client,
            credentials=credentials,
            max_requests=config.rate_limit_requests,
            interval_seconds=config.rate_limit_interval_seconds,
            max_concurrency=config.rate_limit_max_concurrency,
            default_retry=RetryPolicy(
                max_attempts=config.retry_max_attempts,
                base_delay_ms=config.retry_base_delay_ms,
                jitter=config.retry_jitter,
            ),
            max_reset_wait=config.max_reset_wait_seconds,
        )

    async def __aenter__(self) -> "RateLimiter":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()

    # --- Admission ---

    def _bucket(self, key: str) -> _Bucket:
        if key not in self._buckets:
            self._buckets[key] = _Bucket(
                key=key,
                max_requests=self.max_requests,
                interval=self.interval_seconds,
                max_concurrency=self.max_concurrency,
            )
        return self._buckets[key]

    async def _acquire(self, bucket: _Bucket) -> None:
        """Take a concurrency slot, queueing behind earlier callers."""
        if bucket.in_flight < bucket.max_concurrency and not bucket.waiters:
            bucket.in_flight += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        bucket.waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was already handed over; pass it on
                self._release(bucket)
            else:
                bucket.waiters.remove(waiter)
            raise

    def _release(self, bucket: _Bucket) -> None:
        """Hand the slot to the next waiter, or free it."""
        while bucket.waiters:
            waiter = bucket.waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        bucket.in_flight -= 1

    async def _wait_for_quota(self, bucket: _Bucket) -> None:
        """Delay until the bucket's quota window has room."""
        now = self._clock()
        if bucket.blocked_until > now:
            wait = bucket.blocked_until - now
            logger.info(
                "bucket_paused_until_reset",
                extra={"endpoint_key": bucket.key, "wait_seconds": round(wait, 2)},
            )
            await asyncio.sleep(wait)
            bucket.blocked_until = 0.0
            now = self._clock()

        while bucket.window and now - bucket.window[0] >= bucket.interval:
            bucket.window.popleft()

        if len(bucket.window) >= bucket.max_requests:
            wait = bucket.interval - (now - bucket.window[0])
            if wait > 0:
                logger.info(
                    "quota_window_full",
                    extra={
                        "endpoint_key": bucket.key,
                        "window_requests": len(bucket.window),
                        "wait_seconds": round(wait, 2),
                    },
                )
                await asyncio.sleep(wait)
            bucket.window.popleft()
            now = self._clock()

        bucket.window.append(now)

    # --- Rate limit headers ---

    def _inspect_rate_limit(self, bucket: _Bucket, response: httpx.Response) -> bool:
        """React to X-RateLimit-Remaining. Returns True if quota is exhausted."""
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is None:
            return False
        try:
            remaining_count = int(remaining)
        except ValueError:
            logger.warning("Non-numeric X-RateLimit-Remaining header: %r", remaining)
            return False
        if remaining_count > 0:
            return False

        reset_at = None
        reset = response.headers.get("x-ratelimit-reset")
        if reset is not None:
            try:
                reset_at = datetime.fromtimestamp(float(reset), tz=timezone.utc)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)

        exhausted = RateLimitExhausted(reset_at)
        if self.credentials is not None and self.credentials.token_count > 1:
            logger.warning(
                "rate_limit_exhausted_rotating",
                extra={"endpoint_key": bucket.key, "error": str(exhausted)},
            )
            self.credentials.advance()
        else:
            wait = self.max_reset_wait
            if reset_at is not None:
                wait = min(max(0.0, reset_at.timestamp() - time.time()), self.max_reset_wait)
            bucket.blocked_until = self._clock() + wait
            logger.warning(
                "rate_limit_exhausted_pausing",
                extra={
                    "endpoint_key": bucket.key,
                    "wait_seconds": round(wait, 2),
                    "error": str(exhausted),
                },
            )
        return True

    # --- Core fetch ---

    def _auth_headers(self) -> dict[str, str]:
        token = self.credentials.current_token() if self.credentials else None
        if not token:
            raise ConfigurationError("No GitHub credential available")
        return {"Authorization": f"token {token}"}

    async def fetch(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, str] | None = None,
        endpoint_key: str | None = None,
        retry: RetryPolicy | None = None,
        authenticate: bool = True,
        context: str = "GitHub API call",
    ) -> httpx.Response:
        """Send a request through the queue with retries.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Extra request headers
            json: JSON body
            params: Query parameters
            endpoint_key: Rate-limit bucket (derived from url if omitted)
            retry: Retry policy (limiter default if omitted)
            authenticate: Attach the current credential
            context: Short description for logs

        Returns:
            The first non-retryable response (2xx, 3xx, or 4xx other than 429)

        Raises:
            ConfigurationError: No credential available (never retried)
            TransientNetworkError: Retry budget exhausted
        """
        policy = retry or self.default_retry
        key = endpoint_key or endpoint_key_for(url)
        bucket = self._bucket(key)

        if authenticate:
            self._auth_headers()  # fail fast before queueing

        await self._acquire(bucket)
        try:
            last_error: Exception | None = None
            last_status: int | None = None

            for attempt in range(1, policy.max_attempts + 1):
                await self._wait_for_quota(bucket)

                request_headers = dict(headers or {})
                if authenticate:
                    request_headers.update(self._auth_headers())

                start = time.perf_counter()
                retry_after: float | None = None
                try:
                    response = await self._client.request(
                        method, url, headers=request_headers, json=json, params=params
                    )
                except httpx.TransportError as e:
                    github_request_duration_seconds.labels(key).observe(
                        time.perf_counter() - start
                    )
                    github_requests_total.labels(key, "network_error").inc()
                    last_error, last_status, reason = e, None, "network_error"
                else:
                    github_request_duration_seconds.labels(key).observe(
                        time.perf_counter() - start
                    )
                    status = response.status_code
                    github_requests_total.labels(key, str(status)).inc()
                    exhausted = self._inspect_rate_limit(bucket, response)

                    if status == 429 or (status == 403 and exhausted):
                        reason = "rate_limited"
                        header = response.headers.get("retry-after")
                        if header and header.isdigit():
                            retry_after = min(float(header), self.max_reset_wait)
                    elif status >= 500:
                        reason = "server_error"
                    else:
                        return response
                    last_error, last_status = None, status

                if attempt < policy.max_attempts:
                    delay = policy.delay_seconds(attempt)
                    if retry_after is not None:
                        delay = max(delay, retry_after)
                    github_retries_total.labels(key, reason).inc()
                    logger.warning(
                        "request_retry",
                        extra={
                            "context": context,
                            "endpoint_key": key,
                            "reason": reason,
                            "status_code": last_status,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "delay_seconds": round(delay, 3),
                        },
                    )
                    await asyncio.sleep(delay)

            detail = f"HTTP {last_status}" if last_status is not None else str(last_error)
            logger.error(
                "request_failed",
                extra={
                    "context": context,
                    "endpoint_key": key,
                    "status_code": last_status,
                    "attempts": policy.max_attempts,
                },
            )
            raise TransientNetworkError(
                f"{context} failed after {policy.max_attempts} attempts: {detail}",
                status_code=last_status,
                attempts=policy.max_attempts,
            ) from last_error
        finally:
            self._release(bucket)

    async def submit(self, request: RequestDescriptor) -> httpx.Response:
        """Send a RequestDescriptor through fetch()."""
        return await self.fetch(
            request.method,
            request.url,
            headers=request.headers,
            json=request.json,
            params=request.params,
            endpoint_key=request.endpoint_key,
            retry=request.retry,
            authenticate=request.authenticate,
            context=request.context,
        )

    async def batch_fetch(
        self,
        requests: list[RequestDescriptor],
        concurrency: int = 4,
    ) -> list[dict[str, Any]]:
        """Run several requests with a bounded worker pool.

        Per-bucket ordering and quotas still apply; concurrency only bounds
        how many requests wait in the queue at once.

        Returns:
            One dict per request, in input order:
            {"success": bool, "request": ..., "response" | "error": ...}
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(request: RequestDescriptor) -> dict[str, Any]:
            async with semaphore:
                try:
                    response = await self.submit(request)
                    return {"success": True, "response": response, "request": request}
                except Exception as e:
                    return {"success": False, "error": e, "request": request}

        return list(await asyncio.gather(*(run(r) for r in requests)))

    def get_status(self, endpoint_key: str) -> dict[str, Any]:
        """Current admission state for an endpoint key."""
        bucket = self._bucket(endpoint_key)
        now = self._clock()
        return {
            "endpoint_key": endpoint_key,
            "in_flight": bucket.in_flight,
            "queued": len(bucket.waiters),
            "window_requests": sum(1 for t in bucket.window if now - t < bucket.interval),
            "max_requests": bucket.max_requests,
            "blocked_for_seconds": max(0.0, bucket.blocked_until - now),
        }
