"""Issue composition and parsing for fallback-delivered RSVPs.

When the dispatch transport fails, an RSVP is filed as a GitHub issue whose
body is human readable but also carries the raw payload in a fenced json
block. extract_rsvp_from_issue() is the inverse used by the issue processor.

IMPORTANT: the fenced block is the source of truth. The readable summary
above it is for the organizer only and is never parsed.
"""

import json
import logging
import re
import time
from typing import Any

logger = logging.getLogger("eventcall.github.composer")

RSVP_PENDING_LABELS = ["rsvp", "pending"]
RSVP_PROCESSED_LABELS = ["rsvp", "processed"]

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")


def compose_rsvp_title(payload: dict[str, Any]) -> str:
    return f"RSVP: {payload.get('name', 'Unknown')} - {payload.get('eventId', 'unknown')}"


def compose_rsvp_issue(payload: dict[str, Any]) -> dict[str, Any]:
    """Compose an RSVP payload into an issue create request.

    Args:
        payload: Normalized camelCase RSVP payload

    Returns:
        Dict with title, body, labels ready for the issues API
    """
    attending = payload.get("attending")
    if attending is True:
        attending_text = "Yes"
    elif attending is False:
        attending_text = "No"
    else:
        attending_text = "Not specified"

    parts = [
        "## RSVP Submission",
        "",
        f"**Event ID:** {payload.get('eventId', '')}",
        f"**Name:** {payload.get('name', '')}",
        f"**Email:** {payload.get('email', '')}",
        f"**Attending:** {attending_text}",
        f"**Guests:** {payload.get('guestCount', 0)}",
    ]
    if payload.get("phone"):
        parts.append(f"**Phone:** {payload['phone']}")
    for label, key in (("Rank", "rank"), ("Unit", "unit"), ("Branch", "branch")):
        if payload.get(key):
            parts.append(f"**{label}:** {payload[key]}")
    if payload.get("reason"):
        parts.append(f"**Reason:** {payload['reason']}")
    if payload.get("dietaryRestrictions"):
        parts.append(f"**Dietary:** {', '.join(payload['dietaryRestrictions'])}")

    parts.extend(
        [
            "",
            f"Submitted via issue fallback. Validation hash: `{payload.get('validationHash', '')}`",
            "",
            "### Raw data",
            "",
            "```json",
            json.dumps(payload, indent=2),
            "```",
        ]
    )

    return {
        "title": compose_rsvp_title(payload),
        "body": "\n".join(parts),
        "labels": list(RSVP_PENDING_LABELS),
    }


def extract_rsvp_from_issue(issue: dict[str, Any], now_ms: int | None = None) -> dict[str, Any] | None:
    """Extract the RSVP payload from an issue body.

    Adds issueNumber, issueUrl and processedAt to the payload.

    Returns:
        Payload dict, or None when the body has no parseable json block
    """
    number = issue.get("number")
    match = _JSON_BLOCK.search(issue.get("body") or "")
    if not match:
        logger.warning("rsvp_issue_missing_json", extra={"issue_number": number})
        return None

    try:
        data = json.loads(match.group(1))
    except ValueError as e:
        logger.warning(
            "rsvp_issue_invalid_json",
            extra={"issue_number": number, "error": str(e)},
        )
        return None
    if not isinstance(data, dict):
        logger.warning("rsvp_issue_not_object", extra={"issue_number": number})
        return None

    data["issueNumber"] = number
    data["issueUrl"] = issue.get("html_url")
    data["processedAt"] = now_ms if now_ms is not None else int(time.time() * 1000)
    return data
