"""EventCall - GitHub-backed event and RSVP gateway.

Persists events and RSVPs in GitHub repositories through:
- Configuration management with environment overrides
- Credential rotation driven by rate-limit headers
- CSRF tokens and origin checks for mutating calls
- A FIFO, quota-windowed, retrying request queue
- Workflow dispatch with issue fallback for RSVPs
- A cache mirror for reads while the API is unreachable

Python Version: 3.10+ required
"""

# Configure before other imports so module loggers inherit the handler
from .logging_config import StructuredFormatter, configure_logging

configure_logging()

from .__version__ import __version__
from .cache import CacheMirror
from .config import EventCallConfig, get_config, reset_config
from .credentials import CredentialRotator
from .csrf import CsrfTokenManager
from .errors import (
    ConfigurationError,
    EventCallError,
    GitHubClientError,
    OriginRejected,
    RateLimitExhausted,
    RemoteConflict,
    TransientNetworkError,
    ValidationError,
    user_message,
)
from .github import GitHubGateway, RsvpIssueProcessor, merge_rsvps
from .models import RSVP, DispatchResult, Event, EventStatus, RemoteFile
from .orchestrator import (
    DispatchStrategy,
    IssueStrategy,
    LoggingErrorReporter,
    SubmissionOrchestrator,
    SubmissionOutcome,
)
from .rate_limiter import RateLimiter, RequestDescriptor, RetryPolicy
from .session import SessionContext

__all__ = [
    "RSVP",
    "CacheMirror",
    "ConfigurationError",
    "CredentialRotator",
    "CsrfTokenManager",
    "DispatchResult",
    "DispatchStrategy",
    "Event",
    "EventCallConfig",
    "EventCallError",
    "EventStatus",
    "GitHubClientError",
    "GitHubGateway",
    "IssueStrategy",
    "LoggingErrorReporter",
    "OriginRejected",
    "RateLimitExhausted",
    "RateLimiter",
    "RemoteConflict",
    "RemoteFile",
    "RequestDescriptor",
    "RetryPolicy",
    "RsvpIssueProcessor",
    "SessionContext",
    "StructuredFormatter",
    "SubmissionOrchestrator",
    "SubmissionOutcome",
    "TransientNetworkError",
    "ValidationError",
    "__version__",
    "configure_logging",
    "get_config",
    "merge_rsvps",
    "reset_config",
    "user_message",
]
