"""Error taxonomy for the EventCall gateway.

Every failure the gateway can surface derives from EventCallError so callers
can catch one base class. Propagation policy:

- ConfigurationError / ValidationError: fail fast, no network side effects
- OriginRejected: fatal for that request
- TransientNetworkError: raised only after the retry budget is spent
- RemoteConflict: sha mismatch that survived a re-fetch
- RateLimitExhausted: internal signal, triggers rotation or delay
"""

from datetime import datetime

__all__ = [
    "ConfigurationError",
    "EventCallError",
    "GitHubClientError",
    "OriginRejected",
    "RateLimitExhausted",
    "RemoteConflict",
    "TransientNetworkError",
    "ValidationError",
    "user_message",
]


class EventCallError(Exception):
    """Base class for all EventCall errors."""

    pass


class ConfigurationError(EventCallError):
    """Raised when required configuration (e.g. a credential) is missing."""

    pass


class OriginRejected(EventCallError):
    """Raised when the CSRF token or request origin fails validation."""

    pass


class ValidationError(EventCallError):
    """Raised when a payload is missing required fields or is malformed.

    Attributes:
        errors: Individual validation messages
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message)


class GitHubClientError(EventCallError):
    """Raised when a GitHub API request fails.

    Attributes:
        status_code: HTTP status of the failing response, if any
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientNetworkError(GitHubClientError):
    """Raised when timeouts, 5xx or 429 responses outlast the retry budget."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        attempts: int = 0,
    ):
        self.attempts = attempts
        super().__init__(message, status_code=status_code)


class RemoteConflict(GitHubClientError):
    """Raised when a content write is rejected because its sha is stale."""

    def __init__(self, path: str, status_code: int | None = None):
        self.path = path
        super().__init__(f"Stale sha for {path}", status_code=status_code)


class RateLimitExhausted(GitHubClientError):
    """Raised internally when a credential has no remaining quota."""

    def __init__(self, reset_at: datetime | None = None, message: str = "Rate limit exhausted"):
        self.reset_at = reset_at
        if reset_at is not None:
            message = f"{message}. Resets at {reset_at.isoformat()}"
        super().__init__(message, status_code=403)


def user_message(error: BaseException) -> str:
    """Map an error to a message suitable for end users.

    Args:
        error: Any exception raised by the gateway or orchestrator

    Returns:
        Short user-facing description with a suggested next step
    """
    if isinstance(error, ValidationError):
        return "Please check your input and ensure all required fields are filled correctly."
    if isinstance(error, ConfigurationError):
        return "System authentication issue. Please contact the event organizer."
    if isinstance(error, OriginRejected):
        return "This request was blocked for security reasons. Please reload the page and try again."
    if isinstance(error, RemoteConflict):
        return "This record was changed by someone else. Please reload and try again."

    status = getattr(error, "status_code", None)
    if isinstance(error, RateLimitExhausted) or status == 429:
        return "Too many requests. Please wait a moment and try again."
    if status == 401:
        return "Authentication failed. Please log in again."
    if status == 403:
        return "You don't have permission to perform this action."
    if status == 404:
        return "Requested resource not found. It may have been deleted or moved."
    if isinstance(error, TransientNetworkError) or (status is not None and status >= 500):
        return "Network connection issue. Please check your connection and try again."
    return "An unexpected error occurred. Please try again or contact the event organizer."
