"""Submission orchestration for RSVPs and events.

Validates and normalizes caller data, then delivers it through an ordered
chain of transport strategies. RSVPs try workflow dispatch first and fall
back to filing an issue; events are dispatch-only and dispatch failures
propagate to the caller.

Every strategy attempt is recorded, so a SubmissionOutcome tells "delivered
by strategy N" apart from "all strategies failed".
"""

import hashlib
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .__version__ import __version__
from .csrf import CsrfTokenManager
from .errors import EventCallError, ValidationError, user_message
from .github.client import GitHubGateway
from .github.composer import compose_rsvp_issue
from .metrics import submissions_total

logger = logging.getLogger("eventcall.orchestrator")

__all__ = [
    "DeliveryStrategy",
    "DispatchStrategy",
    "ErrorReporter",
    "IssueStrategy",
    "LoggingErrorReporter",
    "StrategyAttempt",
    "SubmissionOrchestrator",
    "SubmissionOutcome",
]

KIND_RSVP = "submit_rsvp"
KIND_CREATE_EVENT = "create_event"

METHOD_DISPATCH = "github_dispatch"
METHOD_ISSUE = "github_issue"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAX_DESCRIPTION_LENGTH = 500
MAX_LOCATION_LENGTH = 200


# =============================================================================
# Results
# =============================================================================


@dataclass
class StrategyAttempt:
    """One delivery attempt through one strategy."""

    method: str
    success: bool
    error: str | None = None


@dataclass
class SubmissionOutcome:
    """Result of delivering a payload through the strategy chain.

    Attributes:
        success: True if any strategy delivered the payload
        method: Tag of the strategy that succeeded, None if all failed
        attempts: Every attempt in order
        payload: The normalized payload that was delivered
        result: Strategy-specific result (dispatch result or created issue)
    """

    success: bool
    method: str | None
    attempts: list[StrategyAttempt] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None

    @property
    def all_failed(self) -> bool:
        return not self.success and bool(self.attempts)

    @property
    def fallback_used(self) -> bool:
        return self.success and len(self.attempts) > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "method": self.method,
            "attempts": [
                {"method": a.method, "success": a.success, "error": a.error}
                for a in self.attempts
            ],
            "all_failed": self.all_failed,
        }


# =============================================================================
# Error reporting
# =============================================================================


class ErrorReporter(ABC):
    """Sink for errors worth surfacing beyond the local log."""

    @abstractmethod
    def report(
        self,
        error: BaseException,
        context: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        pass


class LoggingErrorReporter(ErrorReporter):
    """Reports errors as structured log records."""

    def report(
        self,
        error: BaseException,
        context: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.error(
            "error_reported",
            extra={
                "context": context,
                "error_type": type(error).__name__,
                "error": str(error),
                "status_code": getattr(error, "status_code", None),
                "user_message": user_message(error),
                **(metadata or {}),
            },
        )


# =============================================================================
# Transport strategies
# =============================================================================


class DeliveryStrategy(ABC):
    """A way of getting a payload to the backend workflows.

    Attributes:
        method: Tag recorded in attempts and in the payload's submissionMethod
    """

    method: str = ""

    def __init__(self, gateway: GitHubGateway) -> None:
        self.gateway = gateway

    @abstractmethod
    async def deliver(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Deliver the payload.

        Raises:
            EventCallError: On any delivery failure
        """


class DispatchStrategy(DeliveryStrategy):
    """repository_dispatch with event_type = kind."""

    method = METHOD_DISPATCH

    async def deliver(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self.gateway.dispatch_workflow(kind, payload)
        return result.to_dict()


class IssueStrategy(DeliveryStrategy):
    """Files an RSVP as a labelled issue for later processing."""

    method = METHOD_ISSUE

    async def deliver(self, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        if kind != KIND_RSVP:
            raise ValidationError(f"Issue delivery does not support {kind}")
        issue = compose_rsvp_issue(payload)
        return await self.gateway.create_issue(issue["title"], issue["body"], issue["labels"])


# =============================================================================
# Orchestrator
# =============================================================================


class SubmissionOrchestrator:
    """Validates, normalizes and delivers RSVPs and events.

    Example:
        >>> orchestrator = SubmissionOrchestrator(gateway)
        >>> outcome = await orchestrator.submit_rsvp(
        ...     {"eventId": "evt-1", "name": "Ann", "email": "ann@example.com"}
        ... )
        >>> outcome.method
        'github_dispatch'
    """

    def __init__(
        self,
        gateway: GitHubGateway,
        csrf: CsrfTokenManager | None = None,
        reporter: ErrorReporter | None = None,
        rsvp_strategies: list[DeliveryStrategy] | None = None,
        event_strategies: list[DeliveryStrategy] | None = None,
    ) -> None:
        self.gateway = gateway
        self.csrf = csrf or gateway.csrf
        self.reporter = reporter or LoggingErrorReporter()
        self.rsvp_strategies = rsvp_strategies or [
            DispatchStrategy(gateway),
            IssueStrategy(gateway),
        ]
        self.event_strategies = event_strategies or [DispatchStrategy(gateway)]

    async def _deliver(
        self,
        kind: str,
        payload: dict[str, Any],
        strategies: list[DeliveryStrategy],
        propagate: bool = False,
        stamp_method: bool = False,
    ) -> SubmissionOutcome:
        """Try strategies in order until one succeeds.

        With propagate=True the last strategy's exception is re-raised instead
        of returning an all-failed outcome.
        """
        attempts: list[StrategyAttempt] = []
        for idx, strategy in enumerate(strategies):
            attempt_payload = dict(payload)
            if stamp_method:
                attempt_payload["submissionMethod"] = strategy.method
            try:
                result = await strategy.deliver(kind, attempt_payload)
            except Exception as e:
                attempts.append(StrategyAttempt(strategy.method, False, str(e)))
                submissions_total.labels(kind, strategy.method, "failed").inc()
                is_last = idx == len(strategies) - 1
                logger.warning(
                    "delivery_strategy_failed",
                    extra={
                        "kind": kind,
                        "method": strategy.method,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "fallback": not is_last,
                    },
                )
                if is_last:
                    self.reporter.report(e, kind, {"attempts": len(attempts)})
                    if propagate:
                        raise
                continue

            attempts.append(StrategyAttempt(strategy.method, True))
            submissions_total.labels(kind, strategy.method, "success").inc()
            logger.info(
                "submission_delivered",
                extra={"kind": kind, "method": strategy.method, "attempts": len(attempts)},
            )
            return SubmissionOutcome(
                success=True,
                method=strategy.method,
                attempts=attempts,
                payload=attempt_payload,
                result=result,
            )

        submissions_total.labels(kind, "none", "failed").inc()
        return SubmissionOutcome(success=False, method=None, attempts=attempts, payload=payload)

    def _check_csrf(self, kind: str) -> None:
        """Log a security event when no CSRF token exists yet; never blocks."""
        if self.csrf.peek() is None:
            logger.warning(
                "csrf_token_missing",
                extra={"kind": kind, "security_event": True},
            )

    # --- RSVPs ---

    @staticmethod
    def validate_rsvp(data: dict[str, Any]) -> None:
        """Check required RSVP fields.

        Raises:
            ValidationError: Listing every problem found
        """
        errors = []
        for key in ("eventId", "name", "email"):
            if not str(data.get(key) or "").strip():
                errors.append(f"Missing required field: {key}")
        email = str(data.get("email") or "").strip()
        if email and not EMAIL_PATTERN.match(email):
            errors.append("Invalid email format")
        if errors:
            raise ValidationError("; ".join(errors), errors=errors)

    @staticmethod
    def normalize_rsvp(data: dict[str, Any], now_ms: int | None = None) -> dict[str, Any]:
        """Build the camelCase RSVP payload with defaults and stamps."""

        def text(key: str) -> str:
            return str(data.get(key) or "").strip()

        try:
            guest_count = int(data.get("guestCount") or 0)
        except (TypeError, ValueError):
            guest_count = 0

        timestamp = data.get("timestamp") or now_ms or int(time.time() * 1000)
        email = text("email").lower()
        event_id = text("eventId")

        validation_hash = data.get("validationHash")
        if not validation_hash:
            digest = hashlib.sha256(f"{event_id}-{email}-{timestamp}".encode("utf-8"))
            validation_hash = digest.hexdigest()[:16]

        return {
            "eventId": event_id,
            "rsvpId": data.get("rsvpId") or str(uuid.uuid4()),
            "name": text("name"),
            "email": email,
            "phone": text("phone"),
            "attending": data.get("attending"),
            "guestCount": guest_count,
            "reason": text("reason"),
            "rank": text("rank"),
            "unit": text("unit"),
            "branch": text("branch"),
            "dietaryRestrictions": list(data.get("dietaryRestrictions") or []),
            "allergyDetails": text("allergyDetails"),
            "customAnswers": dict(data.get("customAnswers") or {}),
            "timestamp": timestamp,
            "validationHash": validation_hash,
            "submissionMethod": data.get("submissionMethod") or "",
            "userAgent": data.get("userAgent") or f"eventcall-python/{__version__}",
            "checkInToken": data.get("checkInToken") or "",
            "editToken": data.get("editToken") or "",
            "isUpdate": bool(data.get("isUpdate", False)),
            "lastModified": data.get("lastModified"),
        }

    async def submit_rsvp(self, data: dict[str, Any]) -> SubmissionOutcome:
        """Validate, normalize and deliver an RSVP.

        Raises:
            ValidationError: Before any network call, for bad input
        """
        self.validate_rsvp(data)
        self._check_csrf(KIND_RSVP)
        payload = self.normalize_rsvp(data)
        outcome = await self._deliver(
            KIND_RSVP, payload, self.rsvp_strategies, stamp_method=True
        )
        if outcome.all_failed:
            logger.error(
                "rsvp_submission_failed",
                extra={"event_id": payload["eventId"], "attempts": len(outcome.attempts)},
            )
        return outcome

    # --- Events ---

    @staticmethod
    def build_event_payload(
        data: dict[str, Any], manager_email: str, now_ms: int | None = None
    ) -> dict[str, Any]:
        """Build the dispatch payload for event creation.

        Raises:
            ValidationError: If title, date or time is missing
        """

        def text(key: str) -> str:
            return str(data.get(key) or "").strip()

        payload = {
            "id": data.get("id") or str(uuid.uuid4()),
            "title": text("title"),
            "description": text("description")[:MAX_DESCRIPTION_LENGTH],
            "date": text("date"),
            "time": text("time"),
            "location": text("location")[:MAX_LOCATION_LENGTH],
            "coverImage": "yes" if data.get("coverImage") else "no",
            "askReason": bool(data.get("askReason")),
            "allowGuests": bool(data.get("allowGuests")),
            "requiresMealChoice": bool(data.get("requiresMealChoice")),
            "customQuestionsCount": len(data.get("customQuestions") or []),
            "managerEmail": manager_email,
            "createdBy": manager_email,
            "createdByName": data.get("createdByName") or manager_email.split("@")[0],
            "created": data.get("created") or now_ms or int(time.time() * 1000),
            "status": "active",
        }
        missing = [key for key in ("title", "date", "time") if not payload[key]]
        if missing:
            errors = [f"Missing required field: {key}" for key in missing]
            raise ValidationError("Missing required event fields", errors=errors)
        return payload

    async def create_event(self, data: dict[str, Any], manager_email: str) -> SubmissionOutcome:
        """Create an event through dispatch only.

        Raises:
            ValidationError: For missing required fields
            EventCallError: The dispatch failure itself, unchanged
        """
        payload = self.build_event_payload(data, manager_email)
        self._check_csrf(KIND_CREATE_EVENT)
        return await self._deliver(
            KIND_CREATE_EVENT, payload, self.event_strategies, propagate=True
        )

    async def delete_event(
        self, event_id: str, title: str, cover_image_url: str | None = None
    ) -> dict[str, Any]:
        """Delete an event, its RSVP list and (best effort) its cover image.

        Returns:
            dict with event, rsvps, image flags (image None if not attempted)
        """
        title = title.strip()
        deleted_event = await self.gateway.delete_content(
            "data", f"events/{event_id}.json", f"Delete event: {title}"
        )
        deleted_rsvps = await self.gateway.delete_content(
            "data", f"rsvps/{event_id}.json", f"Delete responses for event: {title}"
        )

        deleted_image: bool | None = None
        if cover_image_url:
            file_name = cover_image_url.rstrip("/").rsplit("/", 1)[-1]
            if file_name:
                try:
                    deleted_image = await self.gateway.delete_content(
                        "images",
                        f"images/{file_name}",
                        f"Delete cover image for event: {title}",
                    )
                except EventCallError as e:
                    deleted_image = False
                    logger.warning(
                        "cover_image_delete_failed",
                        extra={"event_id": event_id, "file": file_name, "error": str(e)},
                    )

        logger.info(
            "event_deleted",
            extra={"event_id": event_id, "rsvps_deleted": deleted_rsvps, "image_deleted": deleted_image},
        )
        return {"event": deleted_event, "rsvps": deleted_rsvps, "image": deleted_image}
