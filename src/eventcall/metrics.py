"""
Prometheus metrics definitions for EventCall.

Counters and histograms for GitHub API traffic, retries, credential
rotation and submission outcomes. Naming: snake_case, eventcall_ prefix.
"""

from prometheus_client import Counter, Histogram

# ==============================================================================
# COUNTERS - Monotonically increasing values
# ==============================================================================

github_requests_total = Counter(
    "eventcall_github_requests_total",
    "Total GitHub API requests sent",
    ["endpoint_key", "status"],
    # status: HTTP status code as string, or "network_error"
)

github_retries_total = Counter(
    "eventcall_github_retries_total",
    "GitHub API requests retried after a transient failure",
    ["endpoint_key", "reason"],
    # reason: server_error, rate_limited, network_error
)

token_rotations_total = Counter(
    "eventcall_token_rotations_total",
    "Credential rotations triggered by exhausted rate-limit quota",
)

submissions_total = Counter(
    "eventcall_submissions_total",
    "Submission attempts by kind and delivery method",
    ["kind", "method", "status"],
    # kind: submit_rsvp, create_event
    # method: github_dispatch, github_issue, none
    # status: success, failed
)

# ==============================================================================
# HISTOGRAMS - Distributions of observed values
# ==============================================================================

github_request_duration_seconds = Histogram(
    "eventcall_github_request_duration_seconds",
    "Wall time of a single GitHub API request attempt",
    ["endpoint_key"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)
