"""Credential rotation across a set of GitHub tokens.

Rotation is reactive: the rate limiter calls advance() when a response
reports zero remaining quota. The index lives in the injected
SessionContext so rotation progress survives for the life of a session.
"""

import logging

from .metrics import token_rotations_total
from .session import SessionContext

logger = logging.getLogger("eventcall.credentials")

__all__ = ["CredentialRotator"]

TOKEN_INDEX_KEY = "github_token_index"


class CredentialRotator:
    """Selects the current GitHub token from a rotation set.

    Example:
        >>> rotator = CredentialRotator(["t1", "t2"], session=SessionContext())
        >>> rotator.current_token()
        't1'
        >>> rotator.advance()
        >>> rotator.current_token()
        't2'
    """

    def __init__(
        self,
        tokens: list[str] | None = None,
        fallback_token: str | None = None,
        session: SessionContext | None = None,
    ) -> None:
        """Initialize rotator.

        Args:
            tokens: Ordered rotation set (may be empty)
            fallback_token: Single token used when the rotation set is empty
            session: Session context holding the rotation index
        """
        self._tokens = [t for t in (tokens or []) if t]
        self._fallback = fallback_token or None
        self.session = session or SessionContext()

    @classmethod
    def from_config(cls, config, session: SessionContext | None = None) -> "CredentialRotator":
        return cls(config.get_tokens(), config.get_fallback_token(), session)

    @property
    def token_count(self) -> int:
        """Number of distinct credentials available."""
        if self._tokens:
            return len(self._tokens)
        return 1 if self._fallback else 0

    @property
    def index(self) -> int:
        return int(self.session.get(TOKEN_INDEX_KEY, 0) or 0)

    def current_token(self) -> str | None:
        """Return the active token, or None if no credential is configured."""
        if self._tokens:
            return self._tokens[self.index % len(self._tokens)]
        return self._fallback

    def advance(self) -> None:
        """Move to the next token. No-op with fewer than two tokens."""
        if len(self._tokens) <= 1:
            logger.debug("token_rotation_skipped", extra={"token_count": len(self._tokens)})
            return
        new_index = (self.index + 1) % len(self._tokens)
        self.session.set(TOKEN_INDEX_KEY, new_index)
        token_rotations_total.inc()
        logger.info(
            "token_rotated",
            extra={"token_index": new_index, "token_count": len(self._tokens)},
        )
