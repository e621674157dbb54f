"""Data models for EventCall records stored in the data repository.

Events live at events/<id>.json and RSVP lists at rsvps/<event_id>.json in
the data repository. Stored JSON and dispatch payloads use camelCase keys;
the dataclasses expose snake_case attributes and convert with to_dict() /
from_dict().
"""

import base64
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = [
    "DispatchResult",
    "Event",
    "EventStatus",
    "RSVP",
    "RemoteFile",
]


class EventStatus(str, Enum):
    """Lifecycle states of an event."""

    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _as_str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Event:
    """An event owned by a manager account.

    Attributes:
        id: Event identifier (also the file name under events/)
        title: Event title (required)
        date: Event date, YYYY-MM-DD (required)
        time: Event time, HH:MM (required)
        description: Free text, truncated to 500 chars in dispatch payloads
        location: Free text, truncated to 200 chars in dispatch payloads
        cover_image: Cover image URL, if any
        created_by: Manager email
        created: Creation time, epoch milliseconds
        status: draft, active, completed, cancelled
        recurrence: Opaque recurrence rule (not interpreted here)
    """

    id: str
    title: str
    date: str
    time: str
    description: str = ""
    location: str = ""
    cover_image: str = ""
    ask_reason: bool = False
    allow_guests: bool = False
    requires_meal_choice: bool = False
    custom_questions: list[dict[str, Any]] = field(default_factory=list)
    created_by: str = ""
    created_by_name: str = ""
    created: int = 0
    status: EventStatus = EventStatus.ACTIVE
    recurrence: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        status = data.get("status") or EventStatus.ACTIVE.value
        try:
            status = EventStatus(status)
        except ValueError:
            status = EventStatus.ACTIVE
        return cls(
            id=_as_str(data.get("id")),
            title=_as_str(data.get("title")),
            date=_as_str(data.get("date")),
            time=_as_str(data.get("time")),
            description=_as_str(data.get("description")),
            location=_as_str(data.get("location")),
            cover_image=_as_str(data.get("coverImage")),
            ask_reason=bool(data.get("askReason", False)),
            allow_guests=bool(data.get("allowGuests", False)),
            requires_meal_choice=bool(data.get("requiresMealChoice", False)),
            custom_questions=list(data.get("customQuestions") or []),
            created_by=_as_str(data.get("createdBy")),
            created_by_name=_as_str(data.get("createdByName")),
            created=_as_int(data.get("created")),
            status=status,
            recurrence=data.get("recurrence"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the stored camelCase representation."""
        result = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "date": self.date,
            "time": self.time,
            "location": self.location,
            "coverImage": self.cover_image,
            "askReason": self.ask_reason,
            "allowGuests": self.allow_guests,
            "requiresMealChoice": self.requires_meal_choice,
            "customQuestions": self.custom_questions,
            "createdBy": self.created_by,
            "createdByName": self.created_by_name,
            "created": self.created,
            "status": (
                self.status.value if isinstance(self.status, EventStatus) else self.status
            ),
        }
        if self.recurrence is not None:
            result["recurrence"] = self.recurrence
        return result


@dataclass
class RSVP:
    """A guest's response to an event.

    At most one RSVP exists per (event_id, email), compared
    case-insensitively; see eventcall.github.sync.merge_rsvps.
    """

    event_id: str
    name: str
    email: str
    rsvp_id: str = ""
    phone: str = ""
    attending: bool | None = None
    guest_count: int = 0
    reason: str = ""
    rank: str = ""
    unit: str = ""
    branch: str = ""
    dietary_restrictions: list[str] = field(default_factory=list)
    allergy_details: str = ""
    custom_answers: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    validation_hash: str = ""
    submission_method: str = ""
    user_agent: str = ""
    check_in_token: str = ""
    edit_token: str = ""
    is_update: bool = False
    last_modified: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RSVP":
        """Build from camelCase data, trimming strings and lower-casing email."""
        return cls(
            event_id=_as_str(data.get("eventId")),
            name=_as_str(data.get("name")),
            email=_as_str(data.get("email")).lower(),
            rsvp_id=_as_str(data.get("rsvpId")),
            phone=_as_str(data.get("phone")),
            attending=data.get("attending"),
            guest_count=_as_int(data.get("guestCount")),
            reason=_as_str(data.get("reason")),
            rank=_as_str(data.get("rank")),
            unit=_as_str(data.get("unit")),
            branch=_as_str(data.get("branch")),
            dietary_restrictions=list(data.get("dietaryRestrictions") or []),
            allergy_details=_as_str(data.get("allergyDetails")),
            custom_answers=dict(data.get("customAnswers") or {}),
            timestamp=_as_int(data.get("timestamp")),
            validation_hash=_as_str(data.get("validationHash")),
            submission_method=_as_str(data.get("submissionMethod")),
            user_agent=_as_str(data.get("userAgent")),
            check_in_token=_as_str(data.get("checkInToken")),
            edit_token=_as_str(data.get("editToken")),
            is_update=bool(data.get("isUpdate", False)),
            last_modified=data.get("lastModified"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "rsvpId": self.rsvp_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "attending": self.attending,
            "guestCount": self.guest_count,
            "reason": self.reason,
            "rank": self.rank,
            "unit": self.unit,
            "branch": self.branch,
            "dietaryRestrictions": self.dietary_restrictions,
            "allergyDetails": self.allergy_details,
            "customAnswers": self.custom_answers,
            "timestamp": self.timestamp,
            "validationHash": self.validation_hash,
            "submissionMethod": self.submission_method,
            "userAgent": self.user_agent,
            "checkInToken": self.check_in_token,
            "editToken": self.edit_token,
            "isUpdate": self.is_update,
            "lastModified": self.last_modified,
        }


@dataclass(frozen=True)
class RemoteFile:
    """A file read through the contents API.

    Attributes:
        path: Path within the repository
        content: Base64 content as returned by GitHub (may contain newlines)
        sha: Blob sha; required for any update or delete of this path
    """

    path: str
    content: str
    sha: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteFile":
        return cls(
            path=data.get("path", ""),
            content=data.get("content", "") or "",
            sha=data.get("sha", ""),
        )

    @property
    def raw(self) -> bytes:
        return base64.b64decode(self.content.replace("\n", ""))

    @property
    def text(self) -> str:
        return self.raw.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)


@dataclass
class DispatchResult:
    """Result of a repository_dispatch call.

    skipped is True when the local-development guard suppressed the call.
    """

    success: bool
    skipped: bool = False
    event_type: str = ""
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "event_type": self.event_type,
            "status_code": self.status_code,
        }
