# booking_engine/models/domain/calendar_domain.py
"""
Calendar Domain Models
Availability rules, slots and stored calendar events.
Used by services for internal processing and business rules.
"""

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$|^24:00$")


class Weekday(StrEnum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def for_date(cls, day: date) -> "Weekday":
        # date.weekday(): Monday == 0
        return list(cls)[day.weekday()]


class EventStatus(StrEnum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class BookedBy(StrEnum):
    VOICE_AGENT = "voice_agent"
    USER = "user"
    EXTERNAL = "external"


class SyncSource(StrEnum):
    INTERNAL = "internal"
    GOOGLE = "google"
    OUTLOOK = "outlook"


def _to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class TimeInterval(BaseModel):
    """Wall-clock working interval, e.g. {"start": "09:00", "end": "12:00"}."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        if not HHMM_PATTERN.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value

    @model_validator(mode="after")
    def _validate_order(self) -> "TimeInterval":
        if self.start == "24:00":
            raise ValueError("interval cannot start at 24:00")
        if _to_minutes(self.end) <= _to_minutes(self.start):
            raise ValueError(f"interval end {self.end} must be after start {self.start}")
        return self

    @property
    def start_minutes(self) -> int:
        return _to_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return _to_minutes(self.end)

    def bounds_on(self, day: date, tz: tzinfo) -> tuple[datetime, datetime]:
        """Absolute (UTC) start/end of this interval on a calendar day in tz."""
        return _local_instant(day, self.start_minutes, tz), _local_instant(
            day, self.end_minutes, tz
        )


def _local_instant(day: date, minutes: int, tz: tzinfo) -> datetime:
    # 24:00 is midnight of the following day
    extra_days, minutes = divmod(minutes, 24 * 60)
    local_day = day + timedelta(days=extra_days)
    local = datetime.combine(local_day, time(minutes // 60, minutes % 60), tzinfo=tz)
    return local.astimezone(UTC)


class DateOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: date
    available: bool
    reason: str | None = None


class AvailabilityRule(BaseModel):
    """
    Weekly schedule template for one staff member.

    The schedule is keyed by the closed Weekday enum; unknown weekday keys or
    unknown fields are rejected at construction time.
    """

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    tenant_id: str
    owner_id: str
    name: str
    description: str | None = None
    schedule: dict[Weekday, list[TimeInterval]] = Field(default_factory=dict)
    timezone: str = "UTC"
    date_overrides: list[DateOverride] = Field(default_factory=list)
    slot_duration: int = Field(default=30, gt=0)
    buffer_before: int = Field(default=0, ge=0)
    buffer_after: int = Field(default=0, ge=0)
    min_booking_notice: int = Field(default=60, ge=0)
    max_booking_notice: int = Field(default=60 * 24 * 60, ge=0)
    is_default: bool = False
    active: bool = True
    created_at: datetime | None = None

    def override_for(self, day: date) -> DateOverride | None:
        return next((o for o in self.date_overrides if o.date == day), None)

    def intervals_for(self, day: date) -> list[TimeInterval]:
        return self.schedule.get(Weekday.for_date(day), [])


@dataclass(slots=True, frozen=True)
class TimeSlot:
    """Candidate bookable interval. End is exclusive."""

    start: datetime
    end: datetime
    owner_id: str
    owner_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start.isoformat(),
            "end_time": self.end.isoformat(),
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
        }


class Attendee(BaseModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    status: str | None = None


class CalendarEvent(BaseModel):
    """Event row as stored in calendar_events."""

    id: str | None = None
    tenant_id: str
    owner_id: str | None
    calendar_provider_id: str | None = None
    external_event_id: str | None = None
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    timezone: str = "UTC"
    all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    booked_by: BookedBy = BookedBy.USER
    agent_id: str | None = None
    call_id: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    sync_source: SyncSource = SyncSource.INTERNAL
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_interval(self) -> "CalendarEvent":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test: touching at a boundary is not a conflict."""
        return start < self.end_time and end > self.start_time

    @property
    def confirmation_code(self) -> str | None:
        return self.metadata.get("confirmation_code")
