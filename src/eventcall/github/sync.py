"""RSVP issue processor.

Reconciles RSVPs that were delivered through the issue fallback: lists open
issues labelled "rsvp", extracts the raw payload from each body, merges the
payloads into rsvps/<eventId>.json in the data repository, and closes the
processed issues.

merge_rsvps() is the single implementation of the one-RSVP-per-email rule.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..errors import EventCallError, GitHubClientError
from .client import GitHubGateway
from .composer import RSVP_PROCESSED_LABELS, extract_rsvp_from_issue

logger = logging.getLogger("eventcall.github.sync")

__all__ = ["ProcessResult", "RsvpIssueProcessor", "merge_rsvps"]


def merge_rsvps(
    existing: list[dict[str, Any]], incoming: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Merge RSVPs by email, replacing existing entries in place.

    Emails are compared case-insensitively. Entries without an email are
    appended. Applying the same incoming list twice yields the same result.

    Args:
        existing: Stored RSVP dicts (camelCase)
        incoming: New RSVP dicts, applied in order

    Returns:
        New merged list; inputs are not modified
    """
    merged = list(existing)
    index = {
        (r.get("email") or "").lower(): i for i, r in enumerate(merged) if r.get("email")
    }
    for rsvp in incoming:
        email = (rsvp.get("email") or "").lower()
        if email and email in index:
            merged[index[email]] = rsvp
        else:
            if email:
                index[email] = len(merged)
            merged.append(rsvp)
    return merged


@dataclass
class ProcessResult:
    """Result of one issue processing run."""

    total_issues: int = 0
    processed: int = 0
    errors: int = 0
    event_ids: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    error_details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging and CLI output."""
        return {
            "total_issues": self.total_issues,
            "processed": self.processed,
            "errors": self.errors,
            "event_ids": self.event_ids,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class RsvpIssueProcessor:
    """Moves fallback-delivered RSVPs from issues into the data repository.

    Fail-open per event: a failed save counts every RSVP of that event as an
    error but does not stop the run. Close failures are logged only.
    """

    def __init__(self, gateway: GitHubGateway) -> None:
        self.gateway = gateway

    async def process(self) -> ProcessResult:
        """Run one reconciliation pass over open RSVP issues."""
        start = time.monotonic()
        result = ProcessResult()

        issues = await self.gateway.list_issues(labels="rsvp", state="open")
        result.total_issues = len(issues)
        logger.info("rsvp_issues_loaded", extra={"count": len(issues)})

        groups: dict[str, list[tuple[dict[str, Any], dict[str, Any]]]] = {}
        for issue in issues:
            # Pull requests share the issues endpoint
            if "pull_request" in issue:
                continue
            payload = extract_rsvp_from_issue(issue)
            if not payload or not payload.get("eventId"):
                result.errors += 1
                result.error_details.append(f"issue #{issue.get('number')}: no RSVP payload")
                continue
            groups.setdefault(str(payload["eventId"]), []).append((issue, payload))

        result.event_ids = list(groups)

        for event_id, entries in groups.items():
            try:
                await self._save_event_rsvps(event_id, [payload for _, payload in entries])
            except EventCallError as e:
                result.errors += len(entries)
                result.error_details.append(f"event {event_id}: {e}")
                logger.error(
                    "rsvp_save_failed",
                    extra={"event_id": event_id, "count": len(entries), "error": str(e)},
                )
                continue

            for issue, _ in entries:
                await self._close_issue(issue["number"])
                result.processed += 1

        result.duration_seconds = time.monotonic() - start
        logger.info("rsvp_issues_processed", extra=result.to_dict())
        return result

    async def _save_event_rsvps(self, event_id: str, incoming: list[dict[str, Any]]) -> None:
        path = f"rsvps/{event_id}.json"
        existing_file = await self.gateway.read_content("data", path)
        existing = existing_file.json() if existing_file is not None else []
        if not isinstance(existing, list):
            logger.warning("rsvp_file_not_list", extra={"path": path})
            existing = []

        merged = merge_rsvps(existing, incoming)
        await self.gateway.write_content(
            "data",
            path,
            merged,
            f"RSVPs for event {event_id}",
            message=f"Process RSVPs for event {event_id} ({len(incoming)} submissions)",
        )

    async def _close_issue(self, number: int) -> None:
        try:
            await self.gateway.close_issue(number, labels=list(RSVP_PROCESSED_LABELS))
            logger.info("rsvp_issue_closed", extra={"issue_number": number})
        except GitHubClientError as e:
            logger.warning(
                "rsvp_issue_close_failed",
                extra={"issue_number": number, "error": str(e)},
            )
