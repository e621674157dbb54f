"""EventCall dispatch proxy.

FastAPI service that lets browsers trigger repository_dispatch without ever
holding a GitHub token:

- GET /api/csrf issues a short-lived, stateless CSRF token
- POST /api/dispatch validates that token and forwards the dispatch using
  the server-side credential
- GET /health for container healthchecks
- /metrics exposes Prometheus metrics

Run with: uvicorn eventcall.proxy:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field

from .__version__ import __version__
from .config import ENDPOINT_DISPATCH, EventCallConfig, get_config
from .credentials import CredentialRotator
from .csrf import issue_server_token, normalize_origin, verify_server_token
from .errors import EventCallError, GitHubClientError, OriginRejected
from .rate_limiter import RateLimiter
from .session import SessionContext

logger = logging.getLogger("eventcall.proxy")

__all__ = ["app", "create_app"]

PROXY_USER_AGENT = "EventCall-Proxy"


class CsrfResponse(BaseModel):
    """Token issued by /api/csrf."""

    clientId: str = Field(..., description="Opaque client id (uuid4)")
    token: str = Field(..., description="Base64 HMAC-SHA256 of clientId:expires")
    expires: int = Field(..., description="Expiry, epoch milliseconds")


class HealthResponse(BaseModel):
    ok: bool = Field(True, description="Process is up")


class DispatchRequest(BaseModel):
    """Body of /api/dispatch, forwarded to GitHub unchanged."""

    event_type: Any = Field(None, description="repository_dispatch event type")
    client_payload: dict[str, Any] | None = Field(None, description="Workflow payload")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def is_origin_allowed(request: Request, allowed_origins: list[str]) -> bool:
    """Origin (and Referer, if sent) must equal an allowed origin.

    Requests without an Origin header are allowed (same-origin or non-browser).
    """
    origin = request.headers.get("origin")
    if not origin:
        return True
    if normalize_origin(origin) not in allowed_origins:
        return False
    referer = request.headers.get("referer")
    return not referer or normalize_origin(referer) in allowed_origins


def create_app(
    config: EventCallConfig | None = None,
    limiter: RateLimiter | None = None,
) -> FastAPI:
    """Build the proxy application.

    Args:
        config: Configuration. Uses get_config() if None.
        limiter: Rate limiter used to forward dispatches. Built from config if None.
    """
    config = config or get_config()
    limiter = limiter or RateLimiter.from_config(
        config, CredentialRotator.from_config(config, SessionContext())
    )
    secret = config.csrf_shared_secret.get_secret_value()
    allowed_origins = [normalize_origin(o) or o for o in config.allowed_origins]
    dispatch_url = (
        f"{config.github_api_url.rstrip('/')}/repos/"
        f"{config.github_owner}/{config.github_repo}/dispatches"
    )

    if not allowed_origins:
        logger.warning("proxy_no_allowed_origins", extra={"effect": "browser requests blocked"})
    if not secret:
        logger.warning("proxy_no_csrf_secret", extra={"effect": "csrf endpoints disabled"})

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("proxy_started", extra={"dispatch_url": dispatch_url})
        yield
        await limiter.close()

    app = FastAPI(
        title="EventCall Dispatch Proxy",
        description="CSRF-validating proxy for GitHub repository_dispatch",
        version=__version__,
        lifespan=lifespan,
    )
    app.mount("/metrics", make_asgi_app())

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health():
        return HealthResponse(ok=True)

    @app.get("/api/csrf", response_model=CsrfResponse, tags=["CSRF"])
    async def csrf_token(request: Request):
        """Issue a short-lived CSRF token for the client."""
        if not is_origin_allowed(request, allowed_origins):
            logger.warning("origin_rejected", extra={"origin": request.headers.get("origin")})
            return _error(status.HTTP_403_FORBIDDEN, "Origin not allowed")
        if not secret:
            logger.error("csrf_secret_missing")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")

        issued = issue_server_token(secret, ttl_seconds=config.csrf_ttl_seconds)
        return CsrfResponse(**issued.to_dict())

    @app.post("/api/dispatch", tags=["Dispatch"])
    async def dispatch(request: Request, body: DispatchRequest | None = None):
        """Validate CSRF headers and forward the dispatch to GitHub."""
        if not is_origin_allowed(request, allowed_origins):
            logger.warning("origin_rejected", extra={"origin": request.headers.get("origin")})
            return _error(status.HTTP_403_FORBIDDEN, "Origin not allowed")

        client_id = request.headers.get("x-csrf-client")
        token = request.headers.get("x-csrf-token")
        expires_header = request.headers.get("x-csrf-expires")
        try:
            expires = int(expires_header) if expires_header else 0
        except ValueError:
            expires = 0
        if not client_id or not token or not expires:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing CSRF headers")

        if not secret:
            logger.error("csrf_secret_missing")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")

        try:
            verify_server_token(secret, client_id, token, expires)
        except OriginRejected as e:
            logger.warning("csrf_rejected", extra={"reason": str(e), "security_event": True})
            return _error(status.HTTP_403_FORBIDDEN, str(e))

        if body is None or not body.event_type or not isinstance(body.event_type, str):
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid event_type")

        try:
            response = await limiter.fetch(
                "POST",
                dispatch_url,
                headers={
                    "Accept": "application/vnd.github+json",
                    "Content-Type": "application/json",
                    "User-Agent": PROXY_USER_AGENT,
                },
                json={"event_type": body.event_type, "client_payload": body.client_payload},
                endpoint_key=ENDPOINT_DISPATCH,
                context=f"proxy dispatch {body.event_type}",
            )
        except GitHubClientError as e:
            logger.error("proxy_dispatch_failed", extra={"error": str(e), "status_code": e.status_code})
            return _error(e.status_code or status.HTTP_502_BAD_GATEWAY, "GitHub dispatch failed")
        except EventCallError as e:
            logger.error("proxy_dispatch_error", extra={"error": str(e)})
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")

        if response.status_code >= 400:
            message = "GitHub dispatch failed"
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("message"):
                message = data["message"]
            logger.warning(
                "proxy_dispatch_rejected",
                extra={"status_code": response.status_code, "event_type": body.event_type},
            )
            return _error(response.status_code, message)

        logger.info("proxy_dispatched", extra={"event_type": body.event_type})
        return {"success": True}

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(
            "proxy_unexpected_error",
            extra={"path": request.url.path, "error": str(exc)},
            exc_info=True,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server error")

    return app


app = create_app()
