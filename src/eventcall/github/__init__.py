"""GitHub integration package.

Provides the rate-limited gateway for the contents, trees/blobs, dispatch
and issues APIs, issue composition for fallback-delivered RSVPs, and the
processor that folds those issues back into the data repository.
"""

from .client import MAX_DISPATCH_BYTES, GitHubGateway
from .composer import compose_rsvp_issue, extract_rsvp_from_issue
from .sync import ProcessResult, RsvpIssueProcessor, merge_rsvps

__all__ = [
    "MAX_DISPATCH_BYTES",
    "GitHubGateway",
    "ProcessResult",
    "RsvpIssueProcessor",
    "compose_rsvp_issue",
    "extract_rsvp_from_issue",
    "merge_rsvps",
]
