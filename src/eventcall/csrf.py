"""CSRF token handling for EventCall.

Two halves:

- CsrfTokenManager (client): issues and rotates an opaque token bound to
  the session, and checks the page origin against an allow-list.
- derive_token / issue_server_token / verify_server_token (proxy): a
  stateless scheme where the server derives the expected token as
  HMAC-SHA256(secret, "<client_id>:<expires_ms>") and compares it in
  constant time, so no server-side session storage is needed.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from urllib.parse import urlsplit

from .errors import OriginRejected
from .session import SessionContext

logger = logging.getLogger("eventcall.csrf")

__all__ = [
    "CSRF_HEADER",
    "CsrfTokenManager",
    "ServerCsrfToken",
    "derive_token",
    "issue_server_token",
    "normalize_origin",
    "verify_server_token",
]

CSRF_HEADER = "X-CSRF-Token"

TOKEN_KEY = "csrf_token"
ISSUED_AT_KEY = "csrf_issued_at"


def normalize_origin(value: str | None) -> str | None:
    """Reduce a URL or origin to scheme://host[:port]."""
    if not value:
        return None
    parts = urlsplit(value)
    if not parts.scheme or not parts.netloc:
        return value.rstrip("/")
    return f"{parts.scheme}://{parts.netloc}"


class CsrfTokenManager:
    """Client-side CSRF token issuer with time-based rotation.

    Attributes:
        rotation_interval: Seconds a token stays valid
        allowed_origins: Origin allow-list (empty allows every origin)
        page_origin: Origin of the running page, None outside a browser
    """

    def __init__(
        self,
        session: SessionContext | None = None,
        rotation_interval: float = 3600,
        allowed_origins: list[str] | None = None,
        page_origin: str | None = None,
        clock=time.time,
    ) -> None:
        self.session = session or SessionContext()
        self.rotation_interval = rotation_interval
        self.allowed_origins = [o.rstrip("/") for o in (allowed_origins or [])]
        self.page_origin = normalize_origin(page_origin)
        self._clock = clock

    @classmethod
    def from_config(cls, config, session: SessionContext | None = None) -> "CsrfTokenManager":
        return cls(
            session=session,
            rotation_interval=config.csrf_rotation_interval_seconds,
            allowed_origins=config.allowed_origins,
            page_origin=config.page_origin,
        )

    def _is_expired(self, issued_at: float | None) -> bool:
        if issued_at is None:
            return True
        return (self._clock() - issued_at) > self.rotation_interval

    def peek(self) -> str | None:
        """Return the current token without creating one."""
        token = self.session.get(TOKEN_KEY)
        if token and not self._is_expired(self.session.get(ISSUED_AT_KEY)):
            return token
        return None

    def get_token(self) -> str:
        """Return the current token, creating one if absent or expired."""
        token = self.peek()
        if token is None:
            token = self.rotate_token()
        return token

    def rotate_token(self) -> str:
        """Force a new token and issue time."""
        token = secrets.token_urlsafe(32)
        self.session.set(TOKEN_KEY, token)
        self.session.set(ISSUED_AT_KEY, self._clock())
        logger.debug("csrf_token_rotated")
        return token

    def origin_allowed(self) -> bool:
        """Check the page origin against the allow-list."""
        if not self.allowed_origins or self.page_origin is None:
            return True
        return self.page_origin in self.allowed_origins

    def headers(self) -> dict[str, str]:
        return {CSRF_HEADER: self.get_token()}


# =============================================================================
# Stateless server-side derivation
# =============================================================================


@dataclass(frozen=True)
class ServerCsrfToken:
    """Token handed out by the proxy's /api/csrf endpoint."""

    client_id: str
    token: str
    expires: int  # epoch milliseconds

    def to_dict(self) -> dict:
        return {"clientId": self.client_id, "token": self.token, "expires": self.expires}


def derive_token(secret: str, client_id: str, expires_ms: int) -> str:
    """Derive the expected token for a client id and expiry.

    Args:
        secret: Shared HMAC secret
        client_id: Opaque id issued to the client
        expires_ms: Expiry as epoch milliseconds

    Returns:
        Base64 encoded HMAC-SHA256 digest
    """
    msg = f"{client_id}:{expires_ms}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def issue_server_token(
    secret: str, ttl_seconds: int = 900, now_ms: int | None = None
) -> ServerCsrfToken:
    """Issue a fresh client id and its derived token."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    client_id = str(uuid.uuid4())
    expires = now_ms + ttl_seconds * 1000
    return ServerCsrfToken(client_id, derive_token(secret, client_id, expires), expires)


def verify_server_token(
    secret: str,
    client_id: str,
    token: str,
    expires_ms: int,
    now_ms: int | None = None,
) -> None:
    """Verify a client-supplied token.

    Raises:
        OriginRejected: If the token is expired or does not match
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if now_ms > expires_ms:
        raise OriginRejected("CSRF token expired")
    expected = derive_token(secret, client_id, expires_ms)
    if not hmac.compare_digest(expected.encode("utf-8"), str(token).encode("utf-8")):
        raise OriginRejected("Invalid CSRF token")
