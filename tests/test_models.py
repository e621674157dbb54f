"""Tests for EventCall data models."""

import base64
import json

import pytest

from eventcall.models import RSVP, DispatchResult, Event, EventStatus, RemoteFile


class TestEvent:
    """Test Event conversion."""

    @pytest.fixture
    def stored(self):
        return {
            "id": "evt-1",
            "title": "Spring Ball",
            "description": "Formal",
            "date": "2026-04-01",
            "time": "19:00",
            "location": "Hall",
            "coverImage": "https://raw/images/x.png",
            "askReason": True,
            "allowGuests": True,
            "requiresMealChoice": False,
            "customQuestions": [{"q": "Song?"}],
            "createdBy": "boss@example.com",
            "createdByName": "Boss",
            "created": 1700000000000,
            "status": "completed",
        }

    def test_from_dict(self, stored):
        event = Event.from_dict(stored)

        assert event.id == "evt-1"
        assert event.cover_image == "https://raw/images/x.png"
        assert event.allow_guests is True
        assert event.status is EventStatus.COMPLETED
        assert event.recurrence is None

    def test_to_dict_restores_stored_shape(self, stored):
        assert Event.from_dict(stored).to_dict() == stored

    def test_recurrence_only_when_set(self, stored):
        stored["recurrence"] = {"freq": "weekly"}
        assert Event.from_dict(stored).to_dict()["recurrence"] == {"freq": "weekly"}

    def test_unknown_status_becomes_active(self, stored):
        stored["status"] = "archived"
        assert Event.from_dict(stored).status is EventStatus.ACTIVE

    def test_missing_fields_default(self):
        event = Event.from_dict({"id": "e"})
        assert (event.title, event.created, event.status) == ("", 0, EventStatus.ACTIVE)


class TestRSVP:
    """Test RSVP conversion."""

    def test_from_dict_normalizes(self):
        rsvp = RSVP.from_dict(
            {"eventId": "e1", "name": " Ann ", "email": " Ann@Example.COM ", "guestCount": "3"}
        )

        assert rsvp.name == "Ann"
        assert rsvp.email == "ann@example.com"
        assert rsvp.guest_count == 3
        assert rsvp.attending is None

    def test_bad_guest_count(self):
        assert RSVP.from_dict({"guestCount": "lots"}).guest_count == 0

    def test_to_dict_keys_are_camel_case(self):
        data = RSVP(event_id="e1", name="Ann", email="a@x.com", is_update=True).to_dict()

        assert data["eventId"] == "e1"
        assert data["isUpdate"] is True
        assert "event_id" not in data
        assert {"rsvpId", "validationHash", "submissionMethod", "lastModified"} <= set(data)


class TestRemoteFile:
    def test_decodes_wrapped_base64(self):
        encoded = base64.b64encode(json.dumps({"a": 1}).encode()).decode()
        wrapped = "\n".join(encoded[i : i + 4] for i in range(0, len(encoded), 4))

        remote = RemoteFile.from_api({"path": "x.json", "content": wrapped, "sha": "s"})

        assert remote.json() == {"a": 1}
        assert remote.sha == "s"

    def test_missing_content(self):
        remote = RemoteFile.from_api({"path": "x", "content": None, "sha": "s"})
        assert remote.raw == b""


class TestDispatchResult:
    def test_to_dict(self):
        assert DispatchResult(success=True, skipped=True, event_type="submit_rsvp").to_dict() == {
            "success": True,
            "skipped": True,
            "event_type": "submit_rsvp",
            "status_code": None,
        }
