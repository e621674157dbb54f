"""Unit tests for the GitHub gateway.

Tests GitHubGateway with:
- Contents API reads, writes with sha, conflict retry and deletes
- Workflow dispatch envelope, size limit and loopback guard
- Origin checks and CSRF headers on mutating calls
- Issue creation and Link-header pagination
- Tree/blob loading of events and RSVP lists
- Cached reads through CacheMirror
"""

import base64
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import API, contents_response, make_response
from eventcall.cache import CacheMirror
from eventcall.csrf import CSRF_HEADER, CsrfTokenManager
from eventcall.errors import (
    ConfigurationError,
    GitHubClientError,
    OriginRejected,
    RemoteConflict,
    TransientNetworkError,
    ValidationError,
)
from eventcall.github.client import MAX_DISPATCH_BYTES, GitHubGateway
from eventcall.models import Event

DATA_CONTENTS = f"{API}/repos/owner/EventCall-Data/contents"
MAIN = f"{API}/repos/owner/EventCall"


def _b64(data) -> str:
    raw = data if isinstance(data, str) else json.dumps(data)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


class FakeContentsStore:
    """In-memory stand-in for the contents API of one repository."""

    def __init__(self, prefix: str, branch: str = "main"):
        self.prefix = prefix + "/"
        self.branch = branch
        self.files: dict[str, tuple[str, str]] = {}  # path -> (content b64, sha)
        self.version = 0
        self.calls: list[tuple[str, str, dict | None]] = []

    async def request(self, method, url, headers=None, json=None, params=None):
        self.calls.append((method, url, json))
        path = url[len(self.prefix):]
        if method == "GET":
            if (params or {}).get("ref", "main") != self.branch:
                return make_response(404, {"message": "No commit found for the ref"})
            if path not in self.files:
                return make_response(404, {"message": "Not Found"})
            content, sha = self.files[path]
            return make_response(200, {"path": path, "content": content, "sha": sha})
        if method == "PUT":
            current = self.files.get(path)
            if current is not None and json.get("sha") != current[1]:
                return make_response(409, {"message": "sha mismatch"})
            self.version += 1
            sha = f"sha-{self.version}"
            self.files[path] = (json["content"], sha)
            return make_response(
                201 if current is None else 200,
                {"content": {"path": path, "sha": sha, "download_url": f"https://raw/{path}"}},
            )
        if method == "DELETE":
            if path not in self.files:
                return make_response(404)
            del self.files[path]
            return make_response(200, {"commit": {}})
        raise AssertionError(f"unexpected {method} {url}")


# =============================================================================
# Contents API
# =============================================================================


class TestReadContent:
    """Test read_content."""

    @pytest.mark.asyncio
    async def test_missing_file_returns_none(self, gateway):
        mock_request = AsyncMock(return_value=make_response(404, {"message": "Not Found"}))
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            assert await gateway.read_content("data", "events/missing.json") is None

        assert mock_request.call_args.args == ("GET", f"{DATA_CONTENTS}/events/missing.json")
        assert mock_request.call_args.kwargs["params"] == {"ref": "main"}

    @pytest.mark.asyncio
    async def test_decodes_content_and_sha(self, gateway):
        response = contents_response("events/e1.json", {"id": "e1"}, sha="abc123")
        with patch.object(gateway.limiter._client, "request", new=AsyncMock(return_value=response)):
            remote = await gateway.read_content("data", "events/e1.json")

        assert remote.sha == "abc123"
        assert remote.json() == {"id": "e1"}

    @pytest.mark.asyncio
    async def test_server_error_status_maps_to_client_error(self, gateway):
        with patch.object(
            gateway.limiter._client, "request", new=AsyncMock(return_value=make_response(401))
        ):
            with pytest.raises(GitHubClientError) as exc_info:
                await gateway.read_content("data", "events/e1.json")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_repo_type_is_configuration_error(self, gateway):
        with pytest.raises(ConfigurationError):
            await gateway.read_content("archive", "x.json")


class TestWriteContent:
    """Test write_content sha handling and conflict retry."""

    @pytest.mark.asyncio
    async def test_create_then_update_carries_sha(self, gateway):
        store = FakeContentsStore(DATA_CONTENTS)
        with patch.object(gateway.limiter._client, "request", new=store.request):
            await gateway.write_content("data", "events/e1.json", {"id": "e1"}, "event e1")
            await gateway.write_content("data", "events/e1.json", {"id": "e1", "v": 2}, "event e1")
            remote = await gateway.read_content("data", "events/e1.json")

        puts = [c for c in store.calls if c[0] == "PUT"]
        assert puts[0][2]["message"] == "Create event e1"
        assert "sha" not in puts[0][2]
        assert puts[0][2]["branch"] == "main"
        assert puts[1][2]["message"] == "Update event e1"
        assert puts[1][2]["sha"] == "sha-1"
        assert remote.json() == {"id": "e1", "v": 2}

    @pytest.mark.asyncio
    async def test_explicit_message_overrides_description(self, gateway):
        store = FakeContentsStore(DATA_CONTENTS)
        with patch.object(gateway.limiter._client, "request", new=store.request):
            await gateway.write_content("data", "rsvps/e1.json", [], "rsvps", message="Process RSVPs")

        assert store.calls[-1][2]["message"] == "Process RSVPs"

    @pytest.mark.asyncio
    async def test_stale_sha_is_refetched_and_retried_once(self, gateway):
        mock_request = AsyncMock(
            side_effect=[
                contents_response("events/e1.json", {"v": 1}, sha="old"),
                make_response(409, {"message": "conflict"}),
                contents_response("events/e1.json", {"v": 1}, sha="new"),
                make_response(200, {"content": {"sha": "newer"}}),
            ]
        )
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            result = await gateway.write_content("data", "events/e1.json", {"v": 2}, "event e1")

        assert result == {"content": {"sha": "newer"}}
        put_bodies = [c.kwargs["json"] for c in mock_request.call_args_list if c.args[0] == "PUT"]
        assert [b["sha"] for b in put_bodies] == ["old", "new"]

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises_remote_conflict(self, gateway):
        def respond(method, url, **kwargs):
            if method == "GET":
                return contents_response("events/e1.json", {"v": 1}, sha="old")
            return make_response(409, {"message": "conflict"})

        mock_request = AsyncMock(side_effect=respond)
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            with pytest.raises(RemoteConflict) as exc_info:
                await gateway.write_content("data", "events/e1.json", {"v": 2}, "event e1")

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_update_on_non_default_branch_reads_sha_from_that_branch(
        self, config, limiter, csrf
    ):
        gateway = GitHubGateway(
            config=config.model_copy(update={"github_branch": "staging"}), limiter=limiter, csrf=csrf
        )
        store = FakeContentsStore(DATA_CONTENTS, branch="staging")
        store.files["events/e1.json"] = (_b64({"v": 1}), "staging-sha")

        with patch.object(limiter._client, "request", new=store.request):
            await gateway.write_content("data", "events/e1.json", {"v": 2}, "event e1")

        put = next(c for c in store.calls if c[0] == "PUT")
        assert put[2]["sha"] == "staging-sha"
        assert put[2]["branch"] == "staging"
        assert put[2]["message"] == "Update event e1"
        assert "events/e1.json" in str(exc_info.value)
        # conflict_retries=1: two read-then-put rounds
        assert [c.args[0] for c in mock_request.call_args_list] == ["GET", "PUT", "GET", "PUT"]

    @pytest.mark.asyncio
    async def test_bytes_content_is_base64_encoded(self, gateway):
        store = FakeContentsStore(f"{API}/repos/owner/EventCall-Images/contents")
        with patch.object(gateway.limiter._client, "request", new=store.request):
            url = await gateway.upload_image("cover.png", b"\x89PNG", "party")

        assert url == "https://raw/images/cover.png"
        content, _ = store.files["images/cover.png"]
        assert base64.b64decode(content) == b"\x89PNG"
        assert store.calls[-1][2]["message"] == "Create cover image party"


class TestDeleteContent:
    """Test delete_content."""

    @pytest.mark.asyncio
    async def test_absent_file_returns_false_without_delete(self, gateway):
        store = FakeContentsStore(DATA_CONTENTS)
        with patch.object(gateway.limiter._client, "request", new=store.request):
            assert await gateway.delete_content("data", "events/e1.json", "Delete") is False

        assert [c[0] for c in store.calls] == ["GET"]

    @pytest.mark.asyncio
    async def test_delete_sends_current_sha(self, gateway):
        store = FakeContentsStore(DATA_CONTENTS)
        store.files["events/e1.json"] = (_b64({"id": "e1"}), "sha-9")
        with patch.object(gateway.limiter._client, "request", new=store.request):
            assert await gateway.delete_content("data", "events/e1.json", "Delete event") is True

        method, _, body = store.calls[-1]
        assert method == "DELETE"
        assert body == {"message": "Delete event", "sha": "sha-9", "branch": "main"}
        assert "events/e1.json" not in store.files


# =============================================================================
# Mutating call headers and origin checks
# =============================================================================


class TestMutatingHeaders:
    """Test CSRF and origin handling."""

    @pytest.mark.asyncio
    async def test_mutating_call_carries_csrf_token(self, gateway, csrf):
        mock_request = AsyncMock(return_value=make_response(201, {"number": 7}))
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            await gateway.create_issue("t", "b", ["rsvp"])

        headers = mock_request.call_args.kwargs["headers"]
        assert headers[CSRF_HEADER] == csrf.peek()
        assert headers["Accept"] == "application/vnd.github.v3+json"
        assert headers["User-Agent"] == "EventCall-App"
        assert headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_read_has_no_csrf_token(self, gateway):
        mock_request = AsyncMock(return_value=make_response(404))
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            await gateway.read_content("data", "x.json")

        assert CSRF_HEADER not in mock_request.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_disallowed_origin_rejected_before_network(self, config, limiter, session):
        csrf = CsrfTokenManager(
            session=session,
            allowed_origins=["https://semperadmin.github.io"],
            page_origin="https://evil.example.com/page",
        )
        gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf)
        mock_request = AsyncMock(return_value=make_response(201))
        with patch.object(limiter._client, "request", new=mock_request):
            with pytest.raises(OriginRejected):
                await gateway.create_issue("t", "b")
            with pytest.raises(OriginRejected):
                await gateway.dispatch_workflow("submit_rsvp", {})

        mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_allowed_origin_passes(self, config, limiter, session):
        csrf = CsrfTokenManager(
            session=session,
            allowed_origins=["https://semperadmin.github.io"],
            page_origin="https://semperadmin.github.io/EventCall/",
        )
        gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf)
        with patch.object(
            limiter._client, "request", new=AsyncMock(return_value=make_response(201, {"number": 1}))
        ):
            issue = await gateway.create_issue("t", "b")

        assert issue["number"] == 1


# =============================================================================
# Workflow dispatch
# =============================================================================


class TestDispatchWorkflow:
    """Test dispatch_workflow."""

    @pytest.mark.asyncio
    async def test_envelope_wraps_payload_and_meta(self, gateway):
        mock_request = AsyncMock(return_value=make_response(204))
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            result = await gateway.dispatch_workflow("submit_rsvp", {"eventId": "e1"})

        assert result.success is True
        assert result.skipped is False
        assert result.status_code == 204

        method, url = mock_request.call_args.args
        assert (method, url) == ("POST", f"{MAIN}/dispatches")
        kwargs = mock_request.call_args.kwargs
        envelope = kwargs["json"]
        assert envelope["event_type"] == "submit_rsvp"
        assert set(envelope["client_payload"]) == {"payload", "meta"}
        assert envelope["client_payload"]["payload"] == {"eventId": "e1"}
        meta = envelope["client_payload"]["meta"]
        assert meta["csrfToken"] == kwargs["headers"][CSRF_HEADER]
        assert isinstance(meta["timestamp"], int)

    @pytest.mark.asyncio
    async def test_oversized_payload_rejected_without_network(self, gateway):
        mock_request = AsyncMock(return_value=make_response(204))
        payload = {"blob": "x" * (MAX_DISPATCH_BYTES + 1)}
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            with pytest.raises(ValidationError, match="too large"):
                await gateway.dispatch_workflow("submit_rsvp", payload)

        mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_loopback_origin_skips_dispatch(self, config, limiter, session):
        csrf = CsrfTokenManager(session=session, page_origin="http://localhost:8000")
        gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf)
        mock_request = AsyncMock(return_value=make_response(204))
        with patch.object(limiter._client, "request", new=mock_request):
            result = await gateway.dispatch_workflow("submit_rsvp", {"eventId": "e1"})

        assert result.success is True
        assert result.skipped is True
        mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_allow_local_dispatch_sends_from_loopback(self, config, limiter, session):
        config = config.model_copy(update={"allow_local_dispatch": True})
        csrf = CsrfTokenManager(session=session, page_origin="http://127.0.0.1:5500")
        gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf)
        mock_request = AsyncMock(return_value=make_response(204))
        with patch.object(limiter._client, "request", new=mock_request):
            result = await gateway.dispatch_workflow("submit_rsvp", {})

        assert result.skipped is False
        mock_request.assert_called_once()

    @pytest.mark.asyncio
    async def test_http_error_raises_client_error(self, gateway):
        response = make_response(422, {"message": "Unprocessable"})
        with patch.object(gateway.limiter._client, "request", new=AsyncMock(return_value=response)):
            with pytest.raises(GitHubClientError) as exc_info:
                await gateway.dispatch_workflow("submit_rsvp", {})

        assert exc_info.value.status_code == 422
        assert "Unprocessable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rotation_across_dispatches(self, gateway, rotator):
        exhausted = make_response(204, headers={"X-RateLimit-Remaining": "0"})
        mock_request = AsyncMock(side_effect=[exhausted, make_response(204)])
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            await gateway.dispatch_workflow("submit_rsvp", {"n": 1})
            await gateway.dispatch_workflow("submit_rsvp", {"n": 2})

        auth = [c.kwargs["headers"]["Authorization"] for c in mock_request.call_args_list]
        assert auth == ["token ghp_first", "token ghp_second"]


# =============================================================================
# Issues
# =============================================================================


class TestIssues:
    """Test issue creation, listing and closing."""

    @pytest.mark.asyncio
    async def test_create_issue_body(self, gateway):
        mock_request = AsyncMock(return_value=make_response(201, {"number": 3}))
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            issue = await gateway.create_issue("RSVP: Jo - e1", "body", ["rsvp", "pending"])

        assert issue == {"number": 3}
        assert mock_request.call_args.args == ("POST", f"{MAIN}/issues")
        assert mock_request.call_args.kwargs["json"] == {
            "title": "RSVP: Jo - e1",
            "body": "body",
            "labels": ["rsvp", "pending"],
        }

    @pytest.mark.asyncio
    async def test_list_issues_follows_link_header(self, gateway):
        page2 = f"{MAIN}/issues?labels=rsvp&state=open&per_page=100&page=2"
        mock_request = AsyncMock(
            side_effect=[
                make_response(
                    200,
                    [{"number": 1}, {"number": 2}],
                    headers={"Link": f'<{page2}>; rel="next", <{page2}>; rel="last"'},
                ),
                make_response(200, [{"number": 3}]),
            ]
        )
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            issues = await gateway.list_issues()

        assert [i["number"] for i in issues] == [1, 2, 3]
        first, second = mock_request.call_args_list
        assert first.kwargs["params"] == {"labels": "rsvp", "state": "open", "per_page": "100"}
        assert second.args[1] == page2
        assert second.kwargs["params"] is None

    @pytest.mark.asyncio
    async def test_foreign_link_header_is_not_followed(self, gateway):
        mock_request = AsyncMock(
            return_value=make_response(
                200, [{"number": 1}], headers={"Link": '<https://evil.example/x>; rel="next"'}
            )
        )
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            issues = await gateway.list_issues()

        assert len(issues) == 1
        assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_close_issue_sets_state_and_labels(self, gateway):
        mock_request = AsyncMock(return_value=make_response(200, {"number": 5, "state": "closed"}))
        with patch.object(gateway.limiter._client, "request", new=mock_request):
            await gateway.close_issue(5, ["rsvp", "processed"])

        assert mock_request.call_args.args == ("PATCH", f"{MAIN}/issues/5")
        assert mock_request.call_args.kwargs["json"] == {
            "state": "closed",
            "labels": ["rsvp", "processed"],
        }


# =============================================================================
# Bulk loading
# =============================================================================


def _tree_and_blobs(files: dict[str, object]):
    """Build a fake request function serving a tree and its blobs."""
    tree = [{"path": "README.md", "type": "blob", "sha": "readme"}]
    blobs = {}
    for i, (path, data) in enumerate(files.items()):
        sha = f"blob-{i}"
        tree.append({"path": path, "type": "blob", "sha": sha})
        blobs[sha] = data if isinstance(data, str) else json.dumps(data)
    tree.append({"path": "events", "type": "tree", "sha": "dir"})

    async def fake_request(method, url, **kwargs):
        if "/git/trees/" in url:
            return make_response(200, {"tree": tree})
        sha = url.rsplit("/", 1)[-1]
        return make_response(200, {"sha": sha, "content": _b64(blobs[sha]), "encoding": "base64"})

    return fake_request


class TestLoading:
    """Test load_events and load_responses."""

    @pytest.mark.asyncio
    async def test_load_events_filters_by_manager(self, gateway):
        fake = _tree_and_blobs(
            {
                "events/e1.json": {"id": "e1", "title": "A", "date": "2026-01-01", "time": "18:00", "createdBy": "Boss@Example.com"},
                "events/e2.json": {"id": "e2", "title": "B", "date": "2026-01-02", "time": "18:00", "createdBy": "other@example.com"},
                "rsvps/e1.json": [],
            }
        )
        with patch.object(gateway.limiter._client, "request", new=fake):
            everything = await gateway.load_events()
            mine = await gateway.load_events(created_by="boss@example.com")

        assert set(everything) == {"e1", "e2"}
        assert list(mine) == ["e1"]
        assert isinstance(mine["e1"], Event)

    @pytest.mark.asyncio
    async def test_unparseable_file_is_skipped(self, gateway):
        fake = _tree_and_blobs(
            {
                "events/good.json": {"id": "good", "title": "A", "date": "d", "time": "t"},
                "events/bad.json": "{not json",
            }
        )
        with patch.object(gateway.limiter._client, "request", new=fake):
            events = await gateway.load_events()

        assert list(events) == ["good"]

    @pytest.mark.asyncio
    async def test_load_responses_keyed_by_event(self, gateway):
        fake = _tree_and_blobs(
            {
                "rsvps/e1.json": [{"eventId": "e1", "name": "Jo", "email": "JO@x.com"}],
                "rsvps/e2.json": [],
            }
        )
        with patch.object(gateway.limiter._client, "request", new=fake):
            responses = await gateway.load_responses()

        assert set(responses) == {"e1", "e2"}
        assert responses["e1"][0].email == "jo@x.com"
        assert responses["e2"] == []

    @pytest.mark.asyncio
    async def test_missing_tree_loads_nothing(self, gateway):
        with patch.object(
            gateway.limiter._client, "request", new=AsyncMock(return_value=make_response(404))
        ):
            assert await gateway.load_events() == {}


# =============================================================================
# Connection and status
# =============================================================================


class TestConnection:
    """Test test_connection and get_status."""

    @pytest.mark.asyncio
    async def test_connection_success(self, gateway):
        response = make_response(200, {"full_name": "owner/EventCall"})
        with patch.object(gateway.limiter._client, "request", new=AsyncMock(return_value=response)):
            result = await gateway.test_connection()

        assert result == {"success": True, "full_name": "owner/EventCall"}

    @pytest.mark.asyncio
    async def test_connection_failure(self, gateway):
        with patch.object(
            gateway.limiter._client, "request", new=AsyncMock(return_value=make_response(401))
        ):
            result = await gateway.test_connection()

        assert result["success"] is False
        assert "401" in result["error"]

    @pytest.mark.asyncio
    async def test_status_covers_all_endpoint_keys(self, gateway):
        status = gateway.get_status()
        assert set(status) == {"github_dispatch", "github_issues", "github_contents", "default"}


# =============================================================================
# Cached reads
# =============================================================================


class TestCachedReads:
    """Test read_content(cached=True) through CacheMirror."""

    @pytest.mark.asyncio
    async def test_cached_copy_served_when_network_fails(self, config, limiter, csrf):
        cache = CacheMirror()
        gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf, cache=cache)
        mock_request = AsyncMock(
            side_effect=[
                contents_response("events/e1.json", {"id": "e1"}),
            ]
            + [httpx.ConnectError("offline")] * 5
        )
        with patch.object(limiter._client, "request", new=mock_request), patch(
            "eventcall.rate_limiter.asyncio.sleep", new=AsyncMock()
        ):
            first = await gateway.read_content("data", "events/e1.json", cached=True)
            second = await gateway.read_content("data", "events/e1.json", cached=True)

        assert first.json() == second.json() == {"id": "e1"}
        assert len(cache) == 1
        assert mock_request.call_args_list[0].kwargs["params"] == {"ref": "main"}

    @pytest.mark.asyncio
    async def test_no_cached_copy_reraises(self, config, limiter, csrf):
        gateway = GitHubGateway(config=config, limiter=limiter, csrf=csrf, cache=CacheMirror())
        with patch.object(
            limiter._client, "request", new=AsyncMock(side_effect=httpx.ConnectError("offline"))
        ), patch("eventcall.rate_limiter.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TransientNetworkError):
                await gateway.read_content("data", "events/e1.json", cached=True)
