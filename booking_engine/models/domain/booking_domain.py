# booking_engine/models/domain/booking_domain.py
"""
Booking Domain Models
Distribution settings plus the transient request/result value objects
exchanged with the booking orchestrator.
"""

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from booking_engine.models.domain.calendar_domain import BookedBy


class DistributionStrategy(StrEnum):
    ROUND_ROBIN = "round_robin"
    LEAST_BUSY = "least_busy"
    PRIORITY = "priority"
    SPECIFIC_USER = "specific_user"


class AssignableUser(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    priority: int = 0


class EventTypeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    duration: int = 30
    title_template: str = "Appointment with {{customer_name}}"
    description_template: str = "Phone: {{customer_phone}}"
    location: str | None = None


class BookingSettings(BaseModel):
    """booking_settings row for a tenant (and optionally one voice agent)."""

    id: str
    tenant_id: str
    agent_id: str | None = None
    assignable_users: list[AssignableUser] = Field(default_factory=list)
    distribution_strategy: DistributionStrategy = DistributionStrategy.ROUND_ROBIN
    event_type_config: EventTypeConfig = Field(default_factory=EventTypeConfig)

    @property
    def owner_ids(self) -> list[str]:
        return [user.user_id for user in self.assignable_users]


class AttendeeContact(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None


class BookingRequest(BaseModel):
    tenant_id: str
    agent_id: str | None = None
    owner_id: str | None = None
    start_time: datetime
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    attendee: AttendeeContact
    notes: str | None = None
    call_id: str | None = None
    timezone: str | None = None
    booked_by: BookedBy = BookedBy.VOICE_AGENT

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)


class BookingResult(BaseModel):
    success: bool
    booking_id: str | None = None
    owner_id: str | None = None
    owner_name: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    confirmation_code: str | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class CancellationResult(BaseModel):
    success: bool
    error: str | None = None
    error_code: str | None = None
