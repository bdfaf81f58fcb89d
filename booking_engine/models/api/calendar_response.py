# booking_engine/models/api/calendar_response.py
"""
Calendar API response models.
Used by routes for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from booking_engine.models.domain.calendar_domain import AvailabilityRule, CalendarEvent, TimeSlot
from booking_engine.models.domain.provider_domain import CalendarProvider


class SlotResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    owner_id: str
    owner_name: str | None = None

    @classmethod
    def from_slot(cls, slot: TimeSlot) -> "SlotResponse":
        return cls(
            start_time=slot.start,
            end_time=slot.end,
            owner_id=slot.owner_id,
            owner_name=slot.owner_name,
        )


class AvailabilityResponse(BaseModel):
    date: str = Field(..., description="ISO calendar date")
    slots: list[SlotResponse] = Field(default_factory=list)
    total_slots: int = 0


class BookingEventResponse(BaseModel):
    """Stored booking as returned by the list endpoint."""

    id: str | None = None
    owner_id: str | None = None
    title: str
    start_time: datetime
    end_time: datetime
    status: str
    booked_by: str
    agent_id: str | None = None
    call_id: str | None = None
    confirmation_code: str | None = None
    external_event_id: str | None = None

    @classmethod
    def from_event(cls, event: CalendarEvent) -> "BookingEventResponse":
        return cls(
            id=event.id,
            owner_id=event.owner_id,
            title=event.title,
            start_time=event.start_time,
            end_time=event.end_time,
            status=event.status.value,
            booked_by=event.booked_by.value,
            agent_id=event.agent_id,
            call_id=event.call_id,
            confirmation_code=event.confirmation_code,
            external_event_id=event.external_event_id,
        )


class BookingListResponse(BaseModel):
    bookings: list[BookingEventResponse] = Field(default_factory=list)
    total_count: int = 0


class AvailabilityRuleResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    description: str | None = None
    schedule: dict[str, list[dict[str, str]]] = Field(default_factory=dict)
    timezone: str
    date_overrides: list[dict[str, Any]] = Field(default_factory=list)
    slot_duration: int
    buffer_before: int
    buffer_after: int
    min_booking_notice: int
    max_booking_notice: int
    is_default: bool
    active: bool

    @classmethod
    def from_rule(cls, rule: AvailabilityRule) -> "AvailabilityRuleResponse":
        return cls(**rule.model_dump(mode="json", exclude={"tenant_id", "created_at"}))


class AvailabilityRuleListResponse(BaseModel):
    rules: list[AvailabilityRuleResponse] = Field(default_factory=list)
    total: int = 0


class ProviderConnectionResponse(BaseModel):
    """Connected calendar, never including tokens."""

    provider_id: str
    owner_id: str
    provider: str
    provider_email: str | None = None
    calendar_id: str
    status: str
    sync_enabled: bool

    @classmethod
    def from_provider(cls, provider: CalendarProvider) -> "ProviderConnectionResponse":
        return cls(
            provider_id=provider.id,
            owner_id=provider.owner_id,
            provider=provider.provider,
            provider_email=provider.provider_email,
            calendar_id=provider.target_calendar_id,
            status=provider.status.value,
            sync_enabled=provider.sync_enabled,
        )


class SyncSummaryResponse(BaseModel):
    providers: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    results: list[dict[str, Any]] = Field(default_factory=list)
