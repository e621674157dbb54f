"""Shared pytest fixtures for EventCall tests.

Fixture Organization:
    - Configuration fixtures: EventCallConfig built without .env lookup
    - Component fixtures: session, rotator, CSRF manager, limiter, gateway
    - Response helpers: real httpx.Response objects with GitHub headers

The limiter's httpx client is never used for real traffic: tests patch
``limiter._client.request`` with an AsyncMock or a fake coroutine.
"""

import base64
import json
import time

import httpx
import pytest
import pytest_asyncio

from eventcall.config import EventCallConfig, reset_config
from eventcall.credentials import CredentialRotator
from eventcall.csrf import CsrfTokenManager
from eventcall.github.client import GitHubGateway
from eventcall.rate_limiter import RateLimiter, RetryPolicy
from eventcall.session import SessionContext

API = "https://api.github.com"


def make_response(
    status_code: int = 200,
    json_data: dict | list | None = None,
    headers: dict | None = None,
    text: str | None = None,
) -> httpx.Response:
    """Create an httpx.Response with default rate-limit headers."""
    _headers = {
        "X-RateLimit-Remaining": "4999",
        "X-RateLimit-Reset": str(int(time.time()) + 3600),
    }
    if headers:
        _headers.update(headers)
    if text is not None:
        return httpx.Response(status_code, text=text, headers=_headers)
    if json_data is None and status_code in (204, 404):
        return httpx.Response(status_code, headers=_headers)
    return httpx.Response(status_code, json=json_data if json_data is not None else {}, headers=_headers)


def contents_response(path: str, data, sha: str = "sha-1") -> httpx.Response:
    """Contents API response for a file holding ``data`` (str or JSON)."""
    raw = data if isinstance(data, str) else json.dumps(data, indent=2)
    encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    return make_response(200, {"path": path, "content": encoded, "sha": sha})


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    """Keep the get_config() cache from leaking between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> EventCallConfig:
    return EventCallConfig(
        _env_file=None,
        github_token="ghp_test_token",
        github_owner="owner",
        github_repo="EventCall",
        github_data_repo="EventCall-Data",
        github_image_repo="EventCall-Images",
    )


@pytest.fixture
def session() -> SessionContext:
    return SessionContext()


@pytest.fixture
def rotator(session) -> CredentialRotator:
    return CredentialRotator(["ghp_first", "ghp_second"], session=session)


@pytest.fixture
def csrf(session) -> CsrfTokenManager:
    return CsrfTokenManager(session=session)


@pytest_asyncio.fixture
async def limiter(rotator):
    """Limiter with a generous window and no backoff delays."""
    limiter = RateLimiter(
        client=httpx.AsyncClient(),
        credentials=rotator,
        max_requests=1000,
        interval_seconds=60.0,
        default_retry=RetryPolicy(max_attempts=3, base_delay_ms=0, jitter=False),
    )
    yield limiter
    await limiter.close()


@pytest_asyncio.fixture
async def gateway(config, limiter, csrf):
    gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf)
    yield gateway
