"""GitHub gateway for EventCall persistence.

Translates domain operations into GitHub REST API v3 calls against three
repositories (main, data, images). All traffic goes through the shared
RateLimiter, which owns retries, credential selection and rotation; this
module owns URL construction, CSRF/origin checks, status mapping and the
sha optimistic-concurrency protocol for content writes.

Reference: https://docs.github.com/en/rest
"""

import base64
import json
import logging
import re
import time
from typing import Any
from urllib.parse import urlsplit

import httpx

from ..cache import CacheMirror
from ..config import (
    ENDPOINT_CONTENTS,
    ENDPOINT_DEFAULT,
    ENDPOINT_DISPATCH,
    ENDPOINT_ISSUES,
    LOOPBACK_HOSTS,
    EventCallConfig,
    get_config,
)
from ..credentials import CredentialRotator
from ..csrf import CSRF_HEADER, CsrfTokenManager
from ..errors import (
    ConfigurationError,
    GitHubClientError,
    OriginRejected,
    RemoteConflict,
    ValidationError,
)
from ..models import RSVP, DispatchResult, Event, RemoteFile
from ..rate_limiter import CONTENTS_RETRY, ISSUES_RETRY, RateLimiter
from ..session import SessionContext

logger = logging.getLogger("eventcall.github.client")

__all__ = ["GitHubGateway", "MAX_DISPATCH_BYTES"]

# repository_dispatch rejects oversized client_payload bodies
MAX_DISPATCH_BYTES = 64 * 1024


class GitHubGateway:
    """GitHub REST API gateway used by the orchestrator and issue processor.

    Attributes:
        config: EventCall configuration
        limiter: Shared rate limiter (owns the httpx client)
        csrf: CSRF manager providing tokens and the origin check
        cache: Optional cache mirror for reads made with cached=True

    Example:
        >>> async with GitHubGateway() as gateway:
        ...     result = await gateway.test_connection()
        ...     if result["success"]:
        ...         events = await gateway.load_events()
    """

    ACCEPT = "application/vnd.github.v3+json"
    USER_AGENT = "EventCall-App"

    # Pagination
    DEFAULT_PER_PAGE = 100
    MAX_PAGES = 50

    def __init__(
        self,
        config: EventCallConfig | None = None,
        limiter: RateLimiter | None = None,
        csrf: CsrfTokenManager | None = None,
        cache: CacheMirror | None = None,
        session: SessionContext | None = None,
    ) -> None:
        """Initialize gateway, building missing collaborators from config.

        Args:
            config: Configuration. Uses get_config() if None.
            limiter: Rate limiter. Built from config with a CredentialRotator if None.
            csrf: CSRF manager. Built from config if None.
            cache: Optional cache mirror; bound to this gateway's fetch if unbound.
            session: Session context shared by the rotator and CSRF manager.
        """
        self.config = config or get_config()
        session = session or SessionContext(self.config.session_state_path)
        self.csrf = csrf or CsrfTokenManager.from_config(self.config, session)
        self.limiter = limiter or RateLimiter.from_config(
            self.config, CredentialRotator.from_config(self.config, session)
        )
        self.cache = cache
        if self.cache is not None:
            self.cache.bind(self._cache_fetch)
        self.base_url = self.config.github_api_url.rstrip("/")
        self.owner = self.config.github_owner

    async def __aenter__(self) -> "GitHubGateway":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.limiter.close()

    # --- Request plumbing ---

    def _repo(self, repo_type: str) -> str:
        try:
            return f"{self.owner}/{self.config.repo_name(repo_type)}"
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self, mutating: bool = False) -> dict[str, str]:
        """Build request headers; mutating calls are origin-checked and carry CSRF."""
        headers = {"Accept": self.ACCEPT, "User-Agent": self.USER_AGENT}
        if mutating:
            if not self.csrf.origin_allowed():
                logger.warning(
                    "origin_rejected",
                    extra={"origin": self.csrf.page_origin},
                )
                raise OriginRejected(f"Origin not allowed: {self.csrf.page_origin}")
            headers[CSRF_HEADER] = self.csrf.get_token()
            headers["Content-Type"] = "application/json"
        return headers

    async def _request(
        self,
        method: str,
        path_or_url: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        endpoint_key: str | None = None,
        retry=None,
        mutating: bool = False,
        context: str = "GitHub API call",
    ) -> httpx.Response:
        url = path_or_url if path_or_url.startswith("http") else self._url(path_or_url)
        return await self.limiter.fetch(
            method,
            url,
            headers=self._headers(mutating),
            json=json,
            params=params,
            endpoint_key=endpoint_key,
            retry=retry,
            context=context,
        )

    async def _cache_fetch(self, method: str, url: str) -> httpx.Response:
        return await self.limiter.fetch(
            method,
            url,
            headers=self._headers(),
            params=self._ref_params(),
            retry=CONTENTS_RETRY,
            context="cached read",
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, context: str) -> None:
        """Map non-success responses to GitHubClientError."""
        if response.status_code < 400:
            return
        detail = response.text[:200] if response.text else ""
        raise GitHubClientError(
            f"{context} failed: {response.status_code} - {detail}",
            status_code=response.status_code,
        )

    async def _paginate(
        self,
        path: str,
        params: dict[str, str] | None = None,
        endpoint_key: str | None = None,
        retry=None,
        context: str = "GitHub API call",
    ) -> list[dict[str, Any]]:
        """Fetch all pages of a list endpoint by following Link headers."""
        items: list[dict[str, Any]] = []
        current_params: dict[str, str] | None = dict(params or {})
        current_params["per_page"] = str(self.DEFAULT_PER_PAGE)
        current_url = self._url(path)

        for page in range(self.MAX_PAGES):
            response = await self._request(
                "GET",
                current_url,
                params=current_params,
                endpoint_key=endpoint_key,
                retry=retry,
                context=context,
            )
            self._raise_for_status(response, context)
            data = response.json()
            if isinstance(data, list):
                items.extend(data)

            next_url = self._parse_next_link(response.headers.get("Link", ""))
            if not next_url:
                break
            current_url = next_url
            current_params = None  # embedded in the Link URL
            logger.debug("paginating", extra={"page": page + 1, "items": len(items)})

        return items

    def _parse_next_link(self, link_header: str) -> str | None:
        """Extract the rel="next" URL from a Link header.

        Format: <https://api.github.com/...?page=2>; rel="next", <...>; rel="last"
        """
        if not link_header:
            return None
        for part in link_header.split(","):
            match = re.match(r'\s*<([^>]+)>;\s*rel="next"', part.strip())
            if match:
                url = match.group(1)
                if not url.startswith(self.base_url + "/"):
                    logger.warning("Rejecting Link header URL not matching base_url: %.100s", url)
                    return None
                return url
        return None

    # --- Connection ---

    async def test_connection(self) -> dict[str, Any]:
        """Check that the main repository is reachable with the current credential.

        Returns:
            dict with success (bool) and full_name, or error
        """
        try:
            response = await self._request(
                "GET", f"/repos/{self._repo('main')}", context="test connection"
            )
            self._raise_for_status(response, "test connection")
            return {"success": True, "full_name": response.json().get("full_name")}
        except (GitHubClientError, ConfigurationError) as e:
            return {"success": False, "error": str(e)}

    # --- Contents API ---

    def _ref_params(self) -> dict[str, str]:
        return {"ref": self.config.github_branch}

    def _contents_path(self, repo_type: str, path: str) -> str:
        return f"/repos/{self._repo(repo_type)}/contents/{path.lstrip('/')}"

    async def read_content(
        self, repo_type: str, path: str, cached: bool = False
    ) -> RemoteFile | None:
        """Read a file through the contents API.

        Args:
            repo_type: main, data or images
            path: Path within the repository
            cached: Serve through the cache mirror when one is configured

        Returns:
            RemoteFile, or None if the path does not exist
        """
        url = self._url(self._contents_path(repo_type, path))
        if cached and self.cache is not None:
            response = await self.cache.get(url)
        else:
            response = await self._request(
                "GET",
                url,
                params=self._ref_params(),
                endpoint_key=ENDPOINT_CONTENTS,
                retry=CONTENTS_RETRY,
                context=f"read {path}",
            )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"read {path}")
        return RemoteFile.from_api(response.json())

    @staticmethod
    def _encode(content: str | bytes | Any) -> str:
        if isinstance(content, bytes):
            raw = content
        elif isinstance(content, str):
            raw = content.encode("utf-8")
        else:
            raw = json.dumps(content, indent=2).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    async def write_content(
        self,
        repo_type: str,
        path: str,
        content: str | bytes | Any,
        description: str,
        message: str | None = None,
    ) -> dict[str, Any]:
        """Create or update a file, carrying the latest sha.

        On a stale sha (409, or 422 when the sha is missing) the sha is
        re-fetched and the write retried up to config.conflict_retries times.

        Args:
            repo_type: main, data or images
            path: Path within the repository
            content: str, bytes, or a JSON-serializable object
            description: Used in the commit message "Create/Update <description>"
            message: Explicit commit message (overrides description)

        Returns:
            Parsed contents API response

        Raises:
            RemoteConflict: If the conflict persists after the retry budget
            GitHubClientError: On other HTTP errors
        """
        encoded = self._encode(content)
        api_path = self._contents_path(repo_type, path)
        last_status: int | None = None

        for attempt in range(self.config.conflict_retries + 1):
            existing = await self.read_content(repo_type, path)
            body: dict[str, Any] = {
                "message": message or f"{'Update' if existing else 'Create'} {description}",
                "content": encoded,
                "branch": self.config.github_branch,
            }
            if existing is not None:
                body["sha"] = existing.sha

            response = await self._request(
                "PUT",
                api_path,
                json=body,
                endpoint_key=ENDPOINT_CONTENTS,
                retry=CONTENTS_RETRY,
                mutating=True,
                context=f"write {path}",
            )
            if response.status_code in (409, 422):
                last_status = response.status_code
                logger.warning(
                    "content_sha_conflict",
                    extra={
                        "path": path,
                        "repo_type": repo_type,
                        "status_code": last_status,
                        "attempt": attempt + 1,
                    },
                )
                continue

            self._raise_for_status(response, f"write {path}")
            logger.info(
                "content_written",
                extra={"path": path, "repo_type": repo_type, "is_new": existing is None},
            )
            return response.json()

        raise RemoteConflict(path, status_code=last_status)

    async def delete_content(self, repo_type: str, path: str, message: str) -> bool:
        """Delete a file using its current sha.

        Returns:
            True if deleted, False if the path did not exist
        """
        existing = await self.read_content(repo_type, path)
        if existing is None:
            logger.info("content_delete_skipped_absent", extra={"path": path})
            return False

        response = await self._request(
            "DELETE",
            self._contents_path(repo_type, path),
            json={"message": message, "sha": existing.sha, "branch": self.config.github_branch},
            endpoint_key=ENDPOINT_CONTENTS,
            retry=CONTENTS_RETRY,
            mutating=True,
            context=f"delete {path}",
        )
        if response.status_code == 404:
            return False
        if response.status_code in (409, 422):
            raise RemoteConflict(path, status_code=response.status_code)
        self._raise_for_status(response, f"delete {path}")
        logger.info("content_deleted", extra={"path": path, "repo_type": repo_type})
        return True

    async def upload_image(self, filename: str, data: bytes, description: str) -> str | None:
        """Upload a cover image to the image repository.

        Returns:
            Public download URL of the stored image
        """
        result = await self.write_content(
            "images", f"images/{filename}", data, f"cover image {description}"
        )
        return (result.get("content") or {}).get("download_url")

    # --- Trees / blobs ---

    async def get_tree(self, repo_type: str, ref: str | None = None) -> list[dict[str, Any]]:
        """List every entry in a repository tree (recursive).

        Returns:
            Tree entries (path, type, sha, size); empty if the ref does not exist
        """
        ref = ref or self.config.github_branch
        response = await self._request(
            "GET",
            f"/repos/{self._repo(repo_type)}/git/trees/{ref}",
            params={"recursive": "1"},
            endpoint_key=ENDPOINT_CONTENTS,
            retry=CONTENTS_RETRY,
            context="load tree",
        )
        if response.status_code == 404:
            logger.info("tree_not_found", extra={"repo_type": repo_type, "ref": ref})
            return []
        self._raise_for_status(response, "load tree")
        return response.json().get("tree", [])

    async def get_blob(self, repo_type: str, sha: str) -> dict[str, Any]:
        response = await self._request(
            "GET",
            f"/repos/{self._repo(repo_type)}/git/blobs/{sha}",
            endpoint_key=ENDPOINT_CONTENTS,
            retry=CONTENTS_RETRY,
            context="load blob",
        )
        self._raise_for_status(response, "load blob")
        return response.json()

    async def _load_json_files(self, prefix: str) -> list[tuple[str, Any]]:
        """Load and decode every <prefix>*.json blob in the data repo.

        Files that fail to load or parse are logged and skipped.
        """
        tree = await self.get_tree("data")
        files = [
            entry
            for entry in tree
            if entry.get("type") == "blob"
            and entry.get("path", "").startswith(prefix)
            and entry.get("path", "").endswith(".json")
        ]
        logger.info("data_files_found", extra={"prefix": prefix, "count": len(files)})

        loaded: list[tuple[str, Any]] = []
        for entry in files:
            try:
                blob = await self.get_blob("data", entry["sha"])
                raw = base64.b64decode((blob.get("content") or "").replace("\n", ""))
                loaded.append((entry["path"], json.loads(raw.decode("utf-8"))))
            except (GitHubClientError, ValueError) as e:
                logger.warning(
                    "data_file_load_failed",
                    extra={"path": entry.get("path"), "error": str(e)},
                )
        return loaded

    async def load_events(self, created_by: str | None = None) -> dict[str, Event]:
        """Load all events from events/*.json.

        Args:
            created_by: Only return events owned by this manager (case-insensitive)

        Returns:
            Mapping of event id to Event
        """
        owner = (created_by or "").lower()
        events: dict[str, Event] = {}
        for _, data in await self._load_json_files("events/"):
            if not isinstance(data, dict):
                continue
            event = Event.from_dict(data)
            if owner and event.created_by.lower() != owner:
                continue
            events[event.id] = event
        return events

    async def load_responses(self) -> dict[str, list[RSVP]]:
        """Load all RSVP lists from rsvps/*.json, keyed by event id."""
        responses: dict[str, list[RSVP]] = {}
        for path, data in await self._load_json_files("rsvps/"):
            if not isinstance(data, list):
                continue
            event_id = path[len("rsvps/") : -len(".json")]
            responses[event_id] = [RSVP.from_dict(r) for r in data if isinstance(r, dict)]
        return responses

    # --- Workflow dispatch ---

    def _is_local_origin(self) -> bool:
        if not self.csrf.page_origin:
            return False
        return urlsplit(self.csrf.page_origin).hostname in LOOPBACK_HOSTS

    async def dispatch_workflow(self, event_type: str, payload: dict[str, Any]) -> DispatchResult:
        """Trigger a repository_dispatch event on the main repository.

        The payload is wrapped as client_payload = {payload, meta} to stay
        within GitHub's ten top-level key limit.

        Returns a skipped result without any network call when the page
        origin is a loopback host and allow_local_dispatch is off.

        Raises:
            ValidationError: If the serialized envelope exceeds MAX_DISPATCH_BYTES
            OriginRejected: If the page origin is not allowed
            GitHubClientError: On HTTP errors
        """
        if not self.config.allow_local_dispatch and self._is_local_origin():
            logger.info(
                "dispatch_skipped_local",
                extra={"event_type": event_type, "origin": self.csrf.page_origin},
            )
            return DispatchResult(success=True, skipped=True, event_type=event_type)

        headers = self._headers(mutating=True)
        envelope = {
            "event_type": event_type,
            "client_payload": {
                "payload": payload,
                "meta": {
                    "timestamp": int(time.time() * 1000),
                    "origin": self.csrf.page_origin,
                    "referer": self.config.page_referer,
                    "csrfToken": headers[CSRF_HEADER],
                },
            },
        }
        size = len(json.dumps(envelope).encode("utf-8"))
        if size > MAX_DISPATCH_BYTES:
            raise ValidationError(
                f"Dispatch payload too large: {size} bytes (max {MAX_DISPATCH_BYTES})"
            )

        response = await self.limiter.fetch(
            "POST",
            self._url(f"/repos/{self._repo('main')}/dispatches"),
            headers=headers,
            json=envelope,
            endpoint_key=ENDPOINT_DISPATCH,
            context=f"dispatch {event_type}",
        )
        self._raise_for_status(response, f"dispatch {event_type}")
        logger.info(
            "workflow_dispatched",
            extra={"event_type": event_type, "payload_bytes": size},
        )
        return DispatchResult(
            success=True, event_type=event_type, status_code=response.status_code
        )

    # --- Issues ---

    async def create_issue(
        self, title: str, body: str, labels: list[str] | None = None
    ) -> dict[str, Any]:
        """Open an issue on the main repository."""
        response = await self._request(
            "POST",
            f"/repos/{self._repo('main')}/issues",
            json={"title": title, "body": body, "labels": labels or []},
            endpoint_key=ENDPOINT_ISSUES,
            retry=ISSUES_RETRY,
            mutating=True,
            context="create issue",
        )
        self._raise_for_status(response, "create issue")
        issue = response.json()
        logger.info("issue_created", extra={"issue_number": issue.get("number")})
        return issue

    async def list_issues(self, labels: str = "rsvp", state: str = "open") -> list[dict[str, Any]]:
        """List issues on the main repository with pagination.

        Args:
            labels: Comma-separated label names
            state: open, closed or all
        """
        return await self._paginate(
            f"/repos/{self._repo('main')}/issues",
            params={"labels": labels, "state": state},
            endpoint_key=ENDPOINT_ISSUES,
            retry=ISSUES_RETRY,
            context="list issues",
        )

    async def close_issue(self, number: int, labels: list[str] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"state": "closed"}
        if labels is not None:
            body["labels"] = labels
        response = await self._request(
            "PATCH",
            f"/repos/{self._repo('main')}/issues/{number}",
            json=body,
            endpoint_key=ENDPOINT_ISSUES,
            retry=ISSUES_RETRY,
            mutating=True,
            context=f"close issue #{number}",
        )
        self._raise_for_status(response, f"close issue #{number}")
        return response.json()

    def get_status(self) -> dict[str, Any]:
        """Limiter state for every endpoint key, for logging and health output."""
        return {
            key: self.limiter.get_status(key)
            for key in (ENDPOINT_DISPATCH, ENDPOINT_ISSUES, ENDPOINT_CONTENTS, ENDPOINT_DEFAULT)
        }
