"""Configuration management with pydantic-settings for EventCall.

- pydantic-settings v2 for type-safe configuration
- Automatic .env file loading with proper precedence
- EVENTCALL_ environment variable prefix
- SecretStr for credentials and the CSRF shared secret
- Frozen config (immutable after load)
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger("eventcall.config")

__all__ = [
    "ENDPOINT_CONTENTS",
    "ENDPOINT_DEFAULT",
    "ENDPOINT_DISPATCH",
    "ENDPOINT_ISSUES",
    "LOOPBACK_HOSTS",
    "REPO_TYPES",
    "EventCallConfig",
    "get_config",
    "reset_config",
]

# Rate-limit bucket keys shared by the limiter and the gateway
ENDPOINT_DISPATCH = "github_dispatch"
ENDPOINT_ISSUES = "github_issues"
ENDPOINT_CONTENTS = "github_contents"
ENDPOINT_DEFAULT = "default"

# Logical repositories the gateway can address
REPO_TYPES = ("main", "data", "images")

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


class EventCallConfig(BaseSettings):
    """Configuration for the EventCall gateway.

    Loads from (in order of precedence):
    1. Environment variables prefixed with EVENTCALL_ (highest priority)
    2. .env file in project root
    3. Default values (lowest priority)

    Attributes:
        github_token: Single fallback credential
        github_tokens: Rotation set, used before github_token when non-empty
        github_owner: Owner of all three repositories
        github_repo: Main repository (receives dispatches and fallback issues)
        github_data_repo: Repository holding events/ and rsvps/ JSON files
        github_image_repo: Repository holding cover images
        github_branch: Branch for content writes
        csrf_rotation_interval_seconds: Lifetime of a client CSRF token
        allowed_origins: Page origins allowed to perform mutating calls
        page_origin: Origin of the running page (None for non-browser callers)
        retry_max_attempts: Default attempts per request
        retry_base_delay_ms: Base of the exponential backoff
        retry_jitter: Add random jitter to backoff delays
        allow_local_dispatch: Permit real dispatches from a loopback origin
        conflict_retries: Re-fetch-and-retry budget on a stale sha
        cache_duration_seconds: Cache mirror freshness window
        cache_max_entries: Cache mirror size cap
    """

    model_config = SettingsConfigDict(
        env_prefix="EVENTCALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # Credentials
    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="Fallback GitHub token used when no rotation set is configured",
    )
    github_tokens: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated rotation set of GitHub tokens",
    )

    # Repository coordinates
    github_api_url: str = Field(
        default="https://api.github.com", description="GitHub REST API base URL"
    )
    github_owner: str = Field(default="SemperAdmin", description="Repository owner")
    github_repo: str = Field(default="EventCall", description="Main repository name")
    github_data_repo: str = Field(
        default="EventCall-Data", description="Data repository name (events/, rsvps/)"
    )
    github_image_repo: str = Field(
        default="EventCall-Images", description="Image repository name"
    )
    github_branch: str = Field(default="main", description="Branch for content writes")

    # CSRF / origin
    csrf_rotation_interval_seconds: int = Field(
        default=3600,
        ge=60,
        le=86400,
        description="Client CSRF token lifetime before rotation",
    )
    allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated origin allow-list (empty allows all)",
    )
    page_origin: str | None = Field(
        default=None, description="Origin of the page issuing requests"
    )
    page_referer: str | None = Field(
        default=None, description="Referer recorded in dispatch metadata"
    )
    csrf_shared_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared HMAC secret for the dispatch proxy",
    )
    csrf_ttl_seconds: int = Field(
        default=900, ge=60, le=86400, description="Proxy CSRF token lifetime"
    )

    # Retry policy defaults
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_ms: int = Field(default=1000, ge=0, le=60000)
    retry_jitter: bool = Field(default=True)

    # Rate limiter buckets
    rate_limit_requests: int = Field(
        default=30, ge=1, le=5000, description="Requests admitted per window per endpoint key"
    )
    rate_limit_interval_seconds: float = Field(
        default=60.0, gt=0, le=3600, description="Quota window length"
    )
    rate_limit_max_concurrency: int = Field(
        default=1, ge=1, le=16, description="In-flight requests per endpoint key"
    )
    max_reset_wait_seconds: float = Field(
        default=60.0, ge=0, le=3600, description="Cap on waiting for X-RateLimit-Reset"
    )

    # Gateway behaviour
    allow_local_dispatch: bool = Field(
        default=False, description="Send real dispatches from a loopback origin"
    )
    conflict_retries: int = Field(
        default=1, ge=0, le=5, description="Re-fetch-and-retry budget on a stale sha"
    )
    cache_duration_seconds: int = Field(
        default=300, ge=0, le=86400, description="Cache mirror freshness window"
    )
    cache_max_entries: int = Field(
        default=256, ge=1, le=10000, description="Cache mirror response store size cap"
    )
    session_state_path: Path | None = Field(
        default=None, description="Optional JSON file persisting session state"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )
    log_format: str = Field(default="json", pattern="^(json|text)$")

    @field_validator("github_tokens", "allowed_origins", mode="before")
    @classmethod
    def parse_comma_list(cls, v):
        """Parse comma-separated strings into lists."""
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("allowed_origins")
    @classmethod
    def strip_trailing_slash(cls, v: list[str]) -> list[str]:
        return [o.rstrip("/") for o in v]

    @field_validator("session_state_path", mode="before")
    @classmethod
    def expand_user_path(cls, v):
        """Expand ~ and environment variables in paths."""
        if isinstance(v, str):
            return Path(os.path.expanduser(os.path.expandvars(v)))
        return v

    @model_validator(mode="after")
    def validate_repo_names(self) -> "EventCallConfig":
        """Repository names are bare names; the owner is configured separately."""
        for name in (self.github_repo, self.github_data_repo, self.github_image_repo):
            if "/" in name:
                raise ValueError(
                    f"Repository name '{name}' must not contain '/'; set EVENTCALL_GITHUB_OWNER instead"
                )
        return self

    def get_tokens(self) -> list[str]:
        """Return the rotation set (may be empty)."""
        return list(self.github_tokens)

    def get_fallback_token(self) -> str | None:
        token = self.github_token.get_secret_value()
        return token or None

    def repo_name(self, repo_type: str) -> str:
        """Resolve a logical repo type to its repository name.

        Args:
            repo_type: One of "main", "data", "images"

        Raises:
            ValueError: For unknown repo types
        """
        mapping = {
            "main": self.github_repo,
            "data": self.github_data_repo,
            "images": self.github_image_repo,
        }
        if repo_type not in mapping:
            raise ValueError(f"Unknown repo type: {repo_type!r}")
        return mapping[repo_type]


@lru_cache(maxsize=1)
def get_config() -> EventCallConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return EventCallConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing.

    Warning:
        Only use in test code. Production code should not reset config.
    """
    get_config.cache_clear()
