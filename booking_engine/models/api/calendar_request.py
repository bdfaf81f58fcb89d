# booking_engine/models/api/calendar_request.py
"""
Calendar API request models.
Used by routes for input validation.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from booking_engine.models.domain.booking_domain import AttendeeContact, BookingRequest
from booking_engine.models.domain.calendar_domain import (
    Attendee,
    BookedBy,
    CalendarEvent,
    DateOverride,
    EventStatus,
    TimeInterval,
    Weekday,
)


class CreateBookingRequest(BaseModel):
    """Request body for POST /calendar/bookings."""

    tenant_id: str = Field(..., description="Tenant making the booking")
    agent_id: str | None = Field(None, description="Voice agent taking the call")
    owner_id: str | None = Field(None, description="Book this staff member directly")
    start_time: datetime = Field(..., description="Appointment start")
    duration_minutes: int = Field(default=30, gt=0, le=24 * 60, description="Length in minutes")
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_phone: str = Field(..., min_length=1, max_length=50)
    customer_email: str | None = Field(None, max_length=320)
    notes: str | None = Field(None, max_length=2000)
    call_id: str | None = Field(None, description="Voice call that produced the booking")
    timezone: str | None = Field(None, description="Timezone for naive start times")
    booked_by: BookedBy = Field(default=BookedBy.VOICE_AGENT)

    def to_booking_request(self) -> BookingRequest:
        return BookingRequest(
            tenant_id=self.tenant_id,
            agent_id=self.agent_id,
            owner_id=self.owner_id,
            start_time=self.start_time,
            duration_minutes=self.duration_minutes,
            attendee=AttendeeContact(
                name=self.customer_name,
                phone=self.customer_phone,
                email=self.customer_email,
            ),
            notes=self.notes,
            call_id=self.call_id,
            timezone=self.timezone,
            booked_by=self.booked_by,
        )


class GoogleCallbackRequest(BaseModel):
    """Authorization code relayed by the app after Google consent."""

    owner_id: str
    tenant_id: str
    code: str = Field(..., min_length=1)



class CreateEventRequest(BaseModel):
    """Manually entered event for POST /calendar/events."""

    tenant_id: str
    owner_id: str
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(None, max_length=5000)
    location: str | None = Field(None, max_length=500)
    start_time: datetime
    end_time: datetime
    timezone: str = Field(default="UTC", description="Zone for naive start/end times")
    all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    attendees: list[Attendee] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    sync_to_provider: bool = Field(default=True, description="Push to the owner's calendar")

    @model_validator(mode="after")
    def _validate_times(self) -> "CreateEventRequest":
        if (self.start_time.tzinfo is None) != (self.end_time.tzinfo is None):
            raise ValueError("start_time and end_time must both carry an offset or neither")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.status == EventStatus.CANCELLED:
            raise ValueError("new events cannot be cancelled")
        return self

    def to_event(self) -> CalendarEvent:
        return CalendarEvent(
            tenant_id=self.tenant_id,
            owner_id=self.owner_id,
            title=self.title,
            description=self.description,
            location=self.location,
            start_time=self.start_time,
            end_time=self.end_time,
            timezone=self.timezone,
            all_day=self.all_day,
            status=self.status,
            attendees=self.attendees,
            metadata=self.metadata,
        )


class AvailabilityRuleFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    schedule: dict[Weekday, list[TimeInterval]]
    timezone: str = "UTC"
    date_overrides: list[DateOverride] = Field(default_factory=list)
    slot_duration: int = Field(default=30, gt=0, le=24 * 60)
    buffer_before: int = Field(default=0, ge=0)
    buffer_after: int = Field(default=0, ge=0)
    min_booking_notice: int = Field(default=60, ge=0)
    max_booking_notice: int = Field(default=60 * 24 * 60, ge=0)
    is_default: bool = False
    active: bool = True


class CreateAvailabilityRuleRequest(AvailabilityRuleFields):
    tenant_id: str
    owner_id: str

    def rule_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"tenant_id", "owner_id"})


class UpdateAvailabilityRuleRequest(BaseModel):
    """Partial update; only fields present in the body change. active=false disables the rule."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    schedule: dict[Weekday, list[TimeInterval]] | None = None
    timezone: str | None = None
    date_overrides: list[DateOverride] | None = None
    slot_duration: int | None = Field(None, gt=0, le=24 * 60)
    buffer_before: int | None = Field(None, ge=0)
    buffer_after: int | None = Field(None, ge=0)
    min_booking_notice: int | None = Field(None, ge=0)
    max_booking_notice: int | None = Field(None, ge=0)
    is_default: bool | None = None
    active: bool | None = None

    def changes(self) -> dict[str, Any]:
        # description may be cleared explicitly; other nulls mean "unchanged"
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None or key == "description"
        }
