# booking_engine/models/domain/google_calendar_domain.py
"""
Google Calendar Domain Models
Wrappers around raw Google Calendar API payloads plus the mapping between
Google events and locally stored calendar events.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from booking_engine.models.domain.calendar_domain import (
    Attendee,
    BookedBy,
    CalendarEvent,
    EventStatus,
    SyncSource,
)

UNTITLED_EVENT = "Untitled Event"


class GoogleEvent:
    """Domain model for a Google Calendar event resource."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.summary = data.get("summary") or ""
        self.description = data.get("description")
        self.location = data.get("location")
        self.status = data.get("status", "confirmed")
        self.start_time = self._parse_datetime(data.get("start", {}))
        self.end_time = self._parse_datetime(data.get("end", {}))
        self.timezone = (data.get("start") or {}).get("timeZone") or "UTC"
        self.attendees = data.get("attendees") or []
        self.html_link = data.get("htmlLink")
        self.organizer_email = (data.get("organizer") or {}).get("email")
        self.created = data.get("created")
        self.updated = data.get("updated")
        self.raw_data = data

    def _parse_datetime(self, dt_data: dict | None) -> datetime | None:
        """Parse datetime from Google Calendar format."""
        if not dt_data:
            return None

        # All-day events carry a bare date
        if "date" in dt_data:
            return datetime.strptime(dt_data["date"], "%Y-%m-%d").replace(tzinfo=UTC)

        if "dateTime" in dt_data:
            try:
                return datetime.fromisoformat(dt_data["dateTime"].replace("Z", "+00:00"))
            except ValueError:
                return None

        return None

    def is_all_day(self) -> bool:
        return "date" in (self.raw_data.get("start") or {})

    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def local_status(self) -> EventStatus:
        if self.is_cancelled():
            return EventStatus.CANCELLED
        if self.status == "tentative":
            return EventStatus.TENTATIVE
        return EventStatus.CONFIRMED

    def has_interval(self) -> bool:
        return self.start_time is not None and self.end_time is not None

    def to_local_event(self, provider_id: str, owner_id: str, tenant_id: str) -> CalendarEvent | None:
        """
        Map to a locally stored event.

        Returns None when the payload lacks an id or a usable start/end, which
        happens for cancelled instances delivered by incremental sync.
        """
        if not self.id or not self.has_interval() or self.start_time >= self.end_time:
            return None

        return CalendarEvent(
            tenant_id=tenant_id,
            owner_id=owner_id,
            calendar_provider_id=provider_id,
            external_event_id=self.id,
            title=self.summary or UNTITLED_EVENT,
            description=self.description,
            location=self.location,
            start_time=self.start_time,
            end_time=self.end_time,
            timezone=self.timezone,
            all_day=self.is_all_day(),
            status=self.local_status(),
            booked_by=BookedBy.EXTERNAL,
            sync_source=SyncSource.GOOGLE,
            attendees=[
                Attendee(
                    email=a.get("email"),
                    name=a.get("displayName"),
                    status=a.get("responseStatus"),
                )
                for a in self.attendees
            ],
            metadata={
                "google_html_link": self.html_link,
                "google_organizer": self.organizer_email,
                "google_created": self.created,
                "google_updated": self.updated,
            },
        )


def event_to_google_body(event: CalendarEvent) -> dict[str, Any]:
    """Build the Google Calendar request body for a locally stored event."""
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": event.start_time.isoformat(), "timeZone": event.timezone},
        "end": {"dateTime": event.end_time.isoformat(), "timeZone": event.timezone},
    }
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location

    attendees = [
        {"email": a.email, "displayName": a.name} for a in event.attendees if a.email
    ]
    if attendees:
        body["attendees"] = attendees

    return body


class CalendarInfo:
    """Domain model for calendar metadata."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.summary = data.get("summary", "")
        self.timezone = data.get("timeZone", "UTC")
        self.access_role = data.get("accessRole", "reader")
        self.primary = data.get("primary", False)

    def is_writable(self) -> bool:
        return self.access_role in ["owner", "writer"]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "summary": self.summary,
            "timezone": self.timezone,
            "access_role": self.access_role,
            "primary": self.primary,
            "writable": self.is_writable(),
        }


@dataclass(slots=True)
class EventPage:
    """One page of an events.list response."""

    events: list[GoogleEvent] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


@dataclass(slots=True)
class BusyPeriod:
    start: datetime
    end: datetime


@dataclass(slots=True)
class FreeBusyResult:
    """Outcome of a freeBusy query across one or more calendars."""

    time_min: datetime
    time_max: datetime
    busy: dict[str, list[BusyPeriod]] = field(default_factory=dict)
    errors: dict[str, list[dict]] = field(default_factory=dict)

    @property
    def is_free(self) -> bool:
        return not any(self.busy.values())
