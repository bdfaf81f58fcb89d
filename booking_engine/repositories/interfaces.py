# booking_engine/repositories/interfaces.py
"""
Store interfaces consumed by the calendar services.

Services depend on these protocols rather than on the Postgres classes, so
the container wires real repositories and tests wire in-memory fakes.
"""

from datetime import datetime
from typing import Protocol

from booking_engine.models.domain.booking_domain import BookingSettings
from booking_engine.models.domain.calendar_domain import (
    AvailabilityRule,
    CalendarEvent,
    EventStatus,
)
from booking_engine.models.domain.provider_domain import (
    CalendarProvider,
    ProviderStatus,
    SyncJob,
    SyncJobKind,
)


class AvailabilityRuleStore(Protocol):
    async def get_governing_rule(self, owner_id: str) -> AvailabilityRule | None: ...

    async def list_active_owner_ids(self, tenant_id: str) -> list[str]: ...

    async def get(self, rule_id: str) -> AvailabilityRule | None: ...

    async def list_for_owner(
        self, owner_id: str, include_inactive: bool = True
    ) -> list[AvailabilityRule]: ...

    async def create(self, rule: AvailabilityRule) -> AvailabilityRule: ...

    async def update(self, rule: AvailabilityRule) -> AvailabilityRule | None: ...

    async def delete(self, rule_id: str) -> bool: ...


class CalendarEventStore(Protocol):
    async def list_busy_events(
        self, owner_id: str, window_start: datetime, window_end: datetime
    ) -> list[CalendarEvent]: ...

    async def is_slot_available(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: str | None = None,
    ) -> bool: ...

    async def count_upcoming(self, owner_id: str, start: datetime, end: datetime) -> int: ...

    async def insert(self, event: CalendarEvent) -> CalendarEvent: ...

    async def get(self, event_id: str) -> CalendarEvent | None: ...

    async def mark_cancelled(self, event_id: str) -> CalendarEvent | None: ...

    async def set_external_id(
        self, event_id: str, provider_id: str, external_event_id: str
    ) -> None: ...

    async def upsert_external(self, event: CalendarEvent) -> bool: ...

    async def mark_cancelled_by_external_id(
        self, provider_id: str, external_event_id: str
    ) -> bool: ...

    async def delete_external_only(self, provider_id: str) -> int: ...

    async def list_events(
        self,
        tenant_id: str,
        *,
        owner_id: str | None = None,
        agent_id: str | None = None,
        status: EventStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]: ...


class CalendarProviderStore(Protocol):
    async def get(self, provider_id: str) -> CalendarProvider | None: ...

    async def get_active_for_owner(
        self, owner_id: str, provider: str = "google"
    ) -> CalendarProvider | None: ...

    async def list_syncable(self) -> list[CalendarProvider]: ...

    async def update_tokens(
        self,
        provider_id: str,
        access_token: bytes,
        expires_at: datetime,
        refresh_token: bytes | None = None,
    ) -> None: ...

    async def update_status(self, provider_id: str, status: ProviderStatus) -> None: ...

    async def complete_sync(
        self, provider_id: str, sync_token: str | None, synced_at: datetime
    ) -> None: ...

    async def clear_sync_token(self, provider_id: str) -> None: ...

    async def upsert_connection(
        self,
        *,
        owner_id: str,
        tenant_id: str,
        provider_email: str,
        access_token: bytes,
        refresh_token: bytes | None,
        expires_at: datetime,
        calendar_id: str = "primary",
    ) -> CalendarProvider: ...

    async def deactivate(self, provider_id: str) -> None: ...


class BookingSettingsStore(Protocol):
    async def get(self, tenant_id: str, agent_id: str | None) -> BookingSettings | None: ...

    async def next_round_robin_user(
        self, tenant_id: str, agent_id: str | None, start: datetime, end: datetime
    ) -> str | None: ...


class UserStore(Protocol):
    async def get_display_names(self, user_ids: list[str]) -> dict[str, str]: ...


class SyncJobStore(Protocol):
    async def enqueue(
        self,
        kind: SyncJobKind,
        provider_id: str,
        event_id: str | None = None,
        run_at: datetime | None = None,
    ) -> SyncJob | None: ...

    async def claim_due(
        self, limit: int, now: datetime, stale_before: datetime | None = None
    ) -> list[SyncJob]: ...

    async def mark_completed(self, job_id: str) -> None: ...

    async def mark_retry(self, job_id: str, error: str, next_run_at: datetime) -> None: ...

    async def mark_failed(self, job_id: str, error: str) -> None: ...
