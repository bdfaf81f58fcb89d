import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest
from cryptography.fernet import Fernet

from booking_engine.config import settings
from booking_engine.db.helpers import EXCLUSION_VIOLATION, DatabaseError
from booking_engine.errors import SlotNoLongerAvailable
from booking_engine.models.domain.calendar_domain import (
    AvailabilityRule,
    CalendarEvent,
    EventStatus,
    SyncSource,
)
from booking_engine.models.domain.google_calendar_domain import EventPage, GoogleEvent
from booking_engine.models.domain.provider_domain import (
    CalendarProvider,
    ProviderStatus,
    SyncJob,
    SyncJobKind,
    SyncJobStatus,
)
from booking_engine.repositories.sync_job_repository import dedup_key
from booking_engine.services.infrastructure.encryption_service import encrypt_token

# Monday
NOW = datetime(2025, 1, 6, 8, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", Fernet.generate_key().decode())


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class FakeRuleStore:
    """Keyed by rule id; governing order and default demotion mirror the repository."""

    def __init__(self):
        self.rules: dict[str, AvailabilityRule] = {}

    def add(self, rule: AvailabilityRule) -> AvailabilityRule:
        if rule.id is None:
            rule = rule.model_copy(update={"id": str(uuid.uuid4())})
        self.rules[rule.id] = rule
        return rule

    def for_owner(self, owner_id, include_inactive=True) -> list[AvailabilityRule]:
        # Newest first on created_at, insertion order standing in when unset
        ordered = sorted(
            enumerate(self.rules.values()),
            key=lambda item: (item[1].is_default, item[1].created_at or NOW, item[0]),
            reverse=True,
        )
        return [
            rule
            for _, rule in ordered
            if rule.owner_id == owner_id and (include_inactive or rule.active)
        ]

    def _clear_default(self, owner_id, keep_rule_id=None):
        for rule_id, rule in list(self.rules.items()):
            if rule.owner_id == owner_id and rule.is_default and rule_id != keep_rule_id:
                self.rules[rule_id] = rule.model_copy(update={"is_default": False})

    async def get_governing_rule(self, owner_id):
        rules = self.for_owner(owner_id, include_inactive=False)
        return rules[0] if rules else None

    async def list_active_owner_ids(self, tenant_id):
        return list(
            dict.fromkeys(
                rule.owner_id
                for rule in self.rules.values()
                if rule.tenant_id == tenant_id and rule.active
            )
        )

    async def get(self, rule_id):
        return self.rules.get(rule_id)

    async def list_for_owner(self, owner_id, include_inactive=True):
        return self.for_owner(owner_id, include_inactive)

    async def create(self, rule):
        if rule.is_default:
            self._clear_default(rule.owner_id)
        return self.add(rule.model_copy(update={"id": str(uuid.uuid4()), "created_at": NOW}))

    async def update(self, rule):
        if rule.id not in self.rules:
            return None
        if rule.is_default:
            self._clear_default(rule.owner_id, keep_rule_id=rule.id)
        self.rules[rule.id] = rule
        return rule

    async def delete(self, rule_id):
        return self.rules.pop(rule_id, None) is not None


def _overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and a_end > b_start


class FakeEventStore:
    """Mirrors the exclusion constraint and check_slot_availability."""

    def __init__(self, rule_store: FakeRuleStore | None = None):
        self.events: dict[str, CalendarEvent] = {}
        self._rules = rule_store

    def add(self, event: CalendarEvent) -> CalendarEvent:
        stored = event.model_copy(update={"id": event.id or str(uuid.uuid4())})
        self.events[stored.id] = stored
        return stored

    def _buffers(self, owner_id):
        rules = self._rules.for_owner(owner_id, include_inactive=False) if self._rules else []
        rule = rules[0] if rules else None
        if rule is None:
            return 0, 0
        return rule.buffer_before, rule.buffer_after

    def _internal_collision(self, event: CalendarEvent, ignore_id: str | None = None) -> bool:
        if event.is_cancelled or event.sync_source != SyncSource.INTERNAL:
            return False
        return any(
            other.id != ignore_id
            and other.owner_id == event.owner_id
            and not other.is_cancelled
            and other.sync_source == SyncSource.INTERNAL
            and _overlaps(other.start_time, other.end_time, event.start_time, event.end_time)
            for other in self.events.values()
        )

    async def list_busy_events(self, owner_id, window_start, window_end):
        return sorted(
            (
                e
                for e in self.events.values()
                if e.owner_id == owner_id
                and not e.is_cancelled
                and _overlaps(e.start_time, e.end_time, window_start, window_end)
            ),
            key=lambda e: e.start_time,
        )

    async def is_slot_available(self, owner_id, start, end, exclude_event_id=None):
        before, after = self._buffers(owner_id)
        buffered_start = start - timedelta(minutes=before)
        buffered_end = end + timedelta(minutes=after)
        return not any(
            e.owner_id == owner_id
            and not e.is_cancelled
            and e.id != exclude_event_id
            and _overlaps(e.start_time, e.end_time, buffered_start, buffered_end)
            for e in self.events.values()
        )

    async def count_upcoming(self, owner_id, start, end):
        return sum(
            1
            for e in self.events.values()
            if e.owner_id == owner_id and not e.is_cancelled and start <= e.start_time <= end
        )

    async def insert(self, event):
        if self._internal_collision(event):
            raise SlotNoLongerAvailable()
        return self.add(event.model_copy(update={"created_at": NOW}))

    async def get(self, event_id):
        return self.events.get(event_id)

    async def mark_cancelled(self, event_id):
        event = self.events.get(event_id)
        if event is None:
            return None
        event = event.model_copy(update={"status": EventStatus.CANCELLED})
        self.events[event_id] = event
        return event

    async def set_external_id(self, event_id, provider_id, external_event_id):
        event = self.events[event_id]
        self.events[event_id] = event.model_copy(
            update={"calendar_provider_id": provider_id, "external_event_id": external_event_id}
        )

    def find_external(self, provider_id, external_event_id):
        return next(
            (
                e
                for e in self.events.values()
                if e.calendar_provider_id == provider_id
                and e.external_event_id == external_event_id
            ),
            None,
        )

    async def upsert_external(self, event):
        existing = self.find_external(event.calendar_provider_id, event.external_event_id)
        if existing is None:
            self.add(event)
            return True

        updated = existing.model_copy(
            update={
                "title": event.title,
                "description": event.description,
                "location": event.location,
                "start_time": event.start_time,
                "end_time": event.end_time,
                "timezone": event.timezone,
                "all_day": event.all_day,
                "status": (
                    existing.status
                    if existing.sync_source == SyncSource.INTERNAL and existing.is_cancelled
                    else event.status
                ),
                "attendees": (
                    existing.attendees
                    if existing.sync_source == SyncSource.INTERNAL
                    else event.attendees
                ),
                "metadata": {**existing.metadata, **event.metadata},
            }
        )
        if self._internal_collision(updated, ignore_id=existing.id):
            raise DatabaseError("exclusion violation", sqlstate=EXCLUSION_VIOLATION, recoverable=False)
        self.events[existing.id] = updated
        return False

    async def mark_cancelled_by_external_id(self, provider_id, external_event_id):
        existing = self.find_external(provider_id, external_event_id)
        if existing is None or existing.is_cancelled:
            return False
        self.events[existing.id] = existing.model_copy(update={"status": EventStatus.CANCELLED})
        return True

    async def delete_external_only(self, provider_id):
        doomed = [
            event_id
            for event_id, e in self.events.items()
            if e.calendar_provider_id == provider_id and e.sync_source != SyncSource.INTERNAL
        ]
        for event_id in doomed:
            del self.events[event_id]
        return len(doomed)

    async def list_events(
        self, tenant_id, *, owner_id=None, agent_id=None, status=None, start=None, end=None
    ):
        return sorted(
            (
                e
                for e in self.events.values()
                if e.tenant_id == tenant_id
                and (owner_id is None or e.owner_id == owner_id)
                and (agent_id is None or e.agent_id == agent_id)
                and (status is None or e.status == status)
                and (start is None or e.end_time > start)
                and (end is None or e.start_time < end)
            ),
            key=lambda e: e.start_time,
        )


class FakeProviderStore:
    def __init__(self):
        self.providers: dict[str, CalendarProvider] = {}
        self.status_changes: list[tuple[str, ProviderStatus]] = []

    def add(self, provider: CalendarProvider) -> CalendarProvider:
        self.providers[provider.id] = provider
        return provider

    def _update(self, provider_id, **fields):
        self.providers[provider_id] = self.providers[provider_id].model_copy(update=fields)

    async def get(self, provider_id):
        return self.providers.get(provider_id)

    async def get_active_for_owner(self, owner_id, provider="google"):
        return next(
            (
                p
                for p in self.providers.values()
                if p.owner_id == owner_id
                and p.provider == provider
                and p.status == ProviderStatus.ACTIVE
                and p.sync_enabled
            ),
            None,
        )

    async def list_syncable(self):
        return [p for p in self.providers.values() if p.is_syncable]

    async def update_tokens(self, provider_id, access_token, expires_at, refresh_token=None):
        fields = {
            "access_token": access_token,
            "token_expires_at": expires_at,
            "status": ProviderStatus.ACTIVE,
        }
        if refresh_token is not None:
            fields["refresh_token"] = refresh_token
        self._update(provider_id, **fields)

    async def update_status(self, provider_id, status):
        self.status_changes.append((provider_id, status))
        self._update(provider_id, status=status)

    async def complete_sync(self, provider_id, sync_token, synced_at):
        self._update(
            provider_id,
            sync_token=sync_token,
            last_synced_at=synced_at,
            status=ProviderStatus.ACTIVE,
        )

    async def clear_sync_token(self, provider_id):
        self._update(provider_id, sync_token=None)

    async def upsert_connection(
        self,
        *,
        owner_id,
        tenant_id,
        provider_email,
        access_token,
        refresh_token,
        expires_at,
        calendar_id="primary",
    ):
        existing = next(
            (
                p
                for p in self.providers.values()
                if p.owner_id == owner_id and p.provider_email == provider_email
            ),
            None,
        )
        provider = CalendarProvider(
            id=existing.id if existing else str(uuid.uuid4()),
            owner_id=owner_id,
            tenant_id=tenant_id,
            access_token=access_token,
            refresh_token=refresh_token or (existing.refresh_token if existing else None),
            token_expires_at=expires_at,
            provider_email=provider_email,
            calendar_id=calendar_id,
            status=ProviderStatus.ACTIVE,
            sync_enabled=True,
        )
        return self.add(provider)

    async def deactivate(self, provider_id):
        self._update(provider_id, status=ProviderStatus.INACTIVE, sync_enabled=False)


class FakeBookingSettingsStore:
    """Round-robin mirrors get_next_available_user: rotate from the stored cursor."""

    def __init__(self, event_store: FakeEventStore):
        self.settings = {}
        self.cursors = {}
        self._events = event_store

    def add(self, booking_settings):
        self.settings[(booking_settings.tenant_id, booking_settings.agent_id)] = booking_settings
        return booking_settings

    async def get(self, tenant_id, agent_id):
        return self.settings.get((tenant_id, agent_id))

    async def next_round_robin_user(self, tenant_id, agent_id, start, end):
        booking_settings = self.settings.get((tenant_id, agent_id))
        if booking_settings is None or not booking_settings.assignable_users:
            return None

        owners = booking_settings.owner_ids
        cursor = self.cursors.get((tenant_id, agent_id), 0)
        for offset in range(len(owners)):
            idx = (cursor + offset) % len(owners)
            if await self._events.is_slot_available(owners[idx], start, end):
                self.cursors[(tenant_id, agent_id)] = (idx + 1) % len(owners)
                return owners[idx]
        return None


class FakeUserStore:
    def __init__(self, names: dict[str, str] | None = None):
        self.names = names or {}

    async def get_display_names(self, user_ids):
        return {user_id: self.names[user_id] for user_id in user_ids if user_id in self.names}


class FakeJobStore:
    def __init__(self):
        self.jobs: dict[str, SyncJob] = {}
        self.fail_enqueue = False

    def pending(self, kind: SyncJobKind | None = None) -> list[SyncJob]:
        return [
            job
            for job in self.jobs.values()
            if job.status == SyncJobStatus.PENDING and (kind is None or job.kind == kind)
        ]

    async def enqueue(self, kind, provider_id, event_id=None, run_at=None):
        if self.fail_enqueue:
            raise DatabaseError("queue unavailable")
        key = dedup_key(kind, provider_id, event_id)
        if any(dedup_key(j.kind, j.provider_id, j.event_id) == key for j in self.pending()):
            return None
        job = SyncJob(
            id=str(uuid.uuid4()),
            kind=kind,
            provider_id=provider_id,
            event_id=event_id,
            status=SyncJobStatus.PENDING,
            attempts=0,
            next_run_at=run_at or NOW,
        )
        self.jobs[job.id] = job
        return job

    async def claim_due(self, limit, now, stale_before=None):
        due = sorted(
            (
                job
                for job in self.jobs.values()
                if (job.status == SyncJobStatus.PENDING and job.next_run_at <= now)
                or (
                    job.status == SyncJobStatus.RUNNING
                    and stale_before is not None
                    and job.updated_at is not None
                    and job.updated_at < stale_before
                )
            ),
            key=lambda job: job.next_run_at,
        )[:limit]
        for job in due:
            job.status = SyncJobStatus.RUNNING
            job.attempts += 1
            job.updated_at = now
        return due

    async def mark_completed(self, job_id):
        self.jobs[job_id].status = SyncJobStatus.COMPLETED
        self.jobs[job_id].last_error = None

    async def mark_retry(self, job_id, error, next_run_at):
        job = self.jobs[job_id]
        job.status = SyncJobStatus.PENDING
        job.last_error = error
        job.next_run_at = next_run_at

    async def mark_failed(self, job_id, error):
        self.jobs[job_id].status = SyncJobStatus.FAILED
        self.jobs[job_id].last_error = error


class FakeLocks:
    def __init__(self):
        self.held: set[str] = set()
        self.acquired: list[str] = []

    @asynccontextmanager
    async def _lock(self, key):
        if key in self.held:
            yield False
            return
        self.held.add(key)
        self.acquired.append(key)
        try:
            yield True
        finally:
            self.held.discard(key)

    def lock(self, key, ttl_s):
        return self._lock(key)


class FakeCalendarClient:
    """Stands in for ProviderCalendarClient with scripted event pages."""

    def __init__(self):
        self.pages: list[EventPage] = []
        self.list_calls: list[dict] = []
        self.remote: dict[str, dict] = {}
        self.created: list[dict] = []
        self.updated: list[tuple[str, dict]] = []
        self.deleted: list[str] = []
        self.list_error: Exception | None = None
        self.delete_error: Exception | None = None

    def script(self, *pages: EventPage):
        self.pages.extend(pages)

    async def list_events_page(
        self, provider, *, time_min=None, time_max=None, sync_token=None, page_token=None, max_results=250
    ):
        self.list_calls.append(
            {
                "time_min": time_min,
                "time_max": time_max,
                "sync_token": sync_token,
                "page_token": page_token,
                "max_results": max_results,
            }
        )
        if self.list_error is not None:
            error, self.list_error = self.list_error, None
            raise error
        return self.pages.pop(0)

    async def create_event(self, provider, body):
        external_id = f"g-{len(self.created) + 1}"
        self.created.append(body)
        self.remote[external_id] = {"id": external_id, **body}
        return GoogleEvent({"id": external_id, **body})

    async def update_event(self, provider, event_id, body):
        self.updated.append((event_id, body))
        self.remote.setdefault(event_id, {"id": event_id}).update(body)
        return GoogleEvent(self.remote[event_id])

    async def delete_event(self, provider, event_id):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(event_id)
        self.remote.pop(event_id, None)
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def rule_store():
    return FakeRuleStore()


@pytest.fixture
def event_store(rule_store):
    return FakeEventStore(rule_store)


@pytest.fixture
def provider_store():
    return FakeProviderStore()


@pytest.fixture
def settings_store(event_store):
    return FakeBookingSettingsStore(event_store)


@pytest.fixture
def user_store():
    return FakeUserStore(
        {
            "owner-a": "alice@example.com",
            "owner-b": "bob@example.com",
            "owner-c": "carol@example.com",
        }
    )


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def locks():
    return FakeLocks()


@pytest.fixture
def calendar_client():
    return FakeCalendarClient()


@pytest.fixture
def make_provider(provider_store):
    def _make(provider_id="prov-1", owner_id="owner-a", **overrides):
        fields = {
            "id": provider_id,
            "owner_id": owner_id,
            "tenant_id": "tenant-1",
            "access_token": encrypt_token("access-token"),
            "refresh_token": encrypt_token("refresh-token"),
            "token_expires_at": datetime(2025, 1, 6, 9, 0, tzinfo=UTC),
            "provider_email": f"{owner_id}@example.com",
            "calendar_id": "primary",
        }
        fields.update(overrides)
        return provider_store.add(CalendarProvider(**fields))

    return _make
