"""
Tests for the booking orchestrator: owner assignment, re-check, persistence
and the outward push it enqueues.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from booking_engine.db.helpers import DatabaseError
from booking_engine.errors import SlotNoLongerAvailable
from booking_engine.models.domain.booking_domain import (
    AssignableUser,
    AttendeeContact,
    BookingRequest,
    BookingSettings,
    DistributionStrategy,
    EventTypeConfig,
)
from booking_engine.models.domain.calendar_domain import (
    BookedBy,
    CalendarEvent,
    EventStatus,
    SyncSource,
)
from booking_engine.models.domain.provider_domain import SyncJobKind
from booking_engine.services.calendar.booking_service import (
    CONFIRMATION_CODE_ALPHABET,
    BookingService,
    generate_confirmation_code,
    render_template,
)

TEN_AM = datetime(2025, 1, 6, 10, 0, tzinfo=UTC)


def make_request(**overrides) -> BookingRequest:
    fields = {
        "tenant_id": "tenant-1",
        "agent_id": "agent-1",
        "start_time": TEN_AM,
        "duration_minutes": 30,
        "attendee": AttendeeContact(name="Jane Doe", phone="+15550100", email="jane@example.com"),
        "notes": "First visit",
        "call_id": "call-42",
    }
    fields.update(overrides)
    return BookingRequest(**fields)


def busy(owner_id, start, minutes=30) -> CalendarEvent:
    return CalendarEvent(
        tenant_id="tenant-1",
        owner_id=owner_id,
        title="Busy",
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
    )


@pytest.fixture
def service(event_store, settings_store, provider_store, job_store, user_store):
    return BookingService(event_store, settings_store, provider_store, job_store, user_store)


@pytest.fixture
def team(settings_store):
    def _team(*users, strategy=DistributionStrategy.ROUND_ROBIN, **config):
        return settings_store.add(
            BookingSettings(
                id="settings-1",
                tenant_id="tenant-1",
                agent_id="agent-1",
                assignable_users=[
                    AssignableUser(user_id=user_id, priority=priority) for user_id, priority in users
                ],
                distribution_strategy=strategy,
                event_type_config=EventTypeConfig(**config),
            )
        )

    return _team


class TestCreateBooking:
    @pytest.mark.asyncio
    async def test_explicit_owner_books_event(self, service, event_store):
        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert result.success is True
        assert result.owner_id == "owner-a"
        assert result.owner_name == "alice@example.com"
        assert result.start_time == TEN_AM
        assert result.end_time == TEN_AM + timedelta(minutes=30)

        event = event_store.events[result.booking_id]
        assert event.title == "Appointment with Jane Doe"
        assert event.description == "Phone: +15550100"
        assert event.status == EventStatus.CONFIRMED
        assert event.booked_by == BookedBy.VOICE_AGENT
        assert event.sync_source == SyncSource.INTERNAL
        assert event.agent_id == "agent-1"
        assert event.call_id == "call-42"
        assert event.attendees[0].name == "Jane Doe"
        assert event.attendees[0].status == "accepted"
        assert event.metadata == {"confirmation_code": result.confirmation_code, "notes": "First visit"}

    @pytest.mark.asyncio
    async def test_confirmation_code_shape(self, service):
        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert len(result.confirmation_code) == 8
        assert set(result.confirmation_code) <= set(CONFIRMATION_CODE_ALPHABET)

    @pytest.mark.asyncio
    async def test_busy_explicit_owner_is_rejected(self, service, event_store):
        event_store.add(busy("owner-a", TEN_AM))

        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert result.success is False
        assert result.error_code == "no_available_user"
        assert result.booking_id is None

    @pytest.mark.asyncio
    async def test_no_settings_means_no_assignable_user(self, service):
        result = await service.create_booking(make_request())

        assert result.success is False
        assert result.error_code == "no_assignable_user"

    @pytest.mark.asyncio
    async def test_naive_start_uses_request_timezone(self, service, event_store):
        result = await service.create_booking(
            make_request(
                owner_id="owner-a",
                start_time=datetime(2025, 1, 6, 10, 0),
                timezone="America/New_York",
            )
        )

        assert result.success is True
        event = event_store.events[result.booking_id]
        assert event.start_time.astimezone(UTC) == datetime(2025, 1, 6, 15, 0, tzinfo=UTC)
        assert event.timezone == "America/New_York"

    @pytest.mark.asyncio
    async def test_templates_are_rendered(self, service, event_store, team):
        team(
            ("owner-a", 0),
            title_template="{{customer_name}} call ({{customer_name}})",
            description_template="{{customer_phone}} / {{customer_email}} / {{notes}}",
            location="Clinic",
        )

        result = await service.create_booking(make_request())

        event = event_store.events[result.booking_id]
        assert event.title == "Jane Doe call (Jane Doe)"
        assert event.description == "+15550100 / jane@example.com / First visit"
        assert event.location == "Clinic"

    @pytest.mark.asyncio
    async def test_concurrent_bookings_for_same_slot(self, service, event_store):
        results = await asyncio.gather(
            service.create_booking(make_request(owner_id="owner-a")),
            service.create_booking(make_request(owner_id="owner-a", call_id="call-43")),
        )

        assert sorted(r.success for r in results) == [False, True]
        live = [e for e in event_store.events.values() if not e.is_cancelled]
        assert len(live) == 1

    @pytest.mark.asyncio
    async def test_insert_collision_reports_slot_taken(self, service, event_store, monkeypatch):
        event_store.add(busy("owner-a", TEN_AM))
        # Re-check passes on a stale read; the insert still hits the constraint
        monkeypatch.setattr(event_store, "is_slot_available", AsyncMock(return_value=True))

        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert result.success is False
        assert result.error_code == "slot_no_longer_available"
        assert result.error == "Time slot is no longer available"

    @pytest.mark.asyncio
    async def test_failed_name_lookup_leaves_no_row(self, service, event_store, user_store):
        user_store.get_display_names = AsyncMock(side_effect=DatabaseError("users table unavailable"))

        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert result.success is False
        assert result.error_code == "persistence_error"
        assert event_store.events == {}

        del user_store.get_display_names
        retried = await service.create_booking(make_request(owner_id="owner-a"))

        assert retried.success is True
        assert retried.owner_name == "alice@example.com"


class TestDistribution:
    @pytest.mark.asyncio
    async def test_round_robin_rotates(self, service, team):
        team(("owner-a", 0), ("owner-b", 0), ("owner-c", 0))

        owners = []
        for offset in range(4):
            result = await service.create_booking(
                make_request(start_time=TEN_AM + timedelta(minutes=30 * offset))
            )
            owners.append(result.owner_id)

        assert owners == ["owner-a", "owner-b", "owner-c", "owner-a"]

    @pytest.mark.asyncio
    async def test_round_robin_skips_busy_owner(self, service, event_store, team):
        team(("owner-a", 0), ("owner-b", 0))
        event_store.add(busy("owner-a", TEN_AM))

        result = await service.create_booking(make_request())

        assert result.owner_id == "owner-b"

    @pytest.mark.asyncio
    async def test_everyone_busy(self, service, event_store, team):
        team(("owner-a", 0), ("owner-b", 0))
        event_store.add(busy("owner-a", TEN_AM))
        event_store.add(busy("owner-b", TEN_AM))

        result = await service.create_booking(make_request())

        assert result.success is False
        assert result.error_code == "no_available_user"

    @pytest.mark.asyncio
    async def test_priority_prefers_lowest_value(self, service, event_store, team):
        team(("owner-a", 2), ("owner-b", 1), strategy=DistributionStrategy.PRIORITY)

        first = await service.create_booking(make_request())
        event_store.add(busy("owner-b", TEN_AM + timedelta(hours=1)))
        second = await service.create_booking(make_request(start_time=TEN_AM + timedelta(hours=1)))

        assert first.owner_id == "owner-b"
        assert second.owner_id == "owner-a"

    @pytest.mark.asyncio
    async def test_least_busy_picks_lightest_week(self, service, event_store, team):
        team(("owner-a", 0), ("owner-b", 0), strategy=DistributionStrategy.LEAST_BUSY)
        event_store.add(busy("owner-a", TEN_AM + timedelta(days=1)))
        event_store.add(busy("owner-a", TEN_AM + timedelta(days=2)))
        event_store.add(busy("owner-b", TEN_AM + timedelta(days=3)))

        result = await service.create_booking(make_request())

        assert result.owner_id == "owner-b"

    @pytest.mark.asyncio
    async def test_least_busy_tie_keeps_first(self, service, team):
        team(("owner-a", 0), ("owner-b", 0), strategy=DistributionStrategy.LEAST_BUSY)

        result = await service.create_booking(make_request())

        assert result.owner_id == "owner-a"

    @pytest.mark.asyncio
    async def test_specific_user_does_not_fall_back(self, service, event_store, team):
        team(("owner-a", 0), ("owner-b", 0), strategy=DistributionStrategy.SPECIFIC_USER)
        event_store.add(busy("owner-a", TEN_AM))

        result = await service.create_booking(make_request())

        assert result.success is False
        assert result.error_code == "no_available_user"


class TestOutwardPush:
    @pytest.mark.asyncio
    async def test_push_enqueued_for_connected_owner(
        self, service, event_store, job_store, make_provider
    ):
        make_provider()

        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert event_store.events[result.booking_id].calendar_provider_id == "prov-1"
        [job] = job_store.pending(SyncJobKind.PUSH_EVENT)
        assert job.provider_id == "prov-1"
        assert job.event_id == result.booking_id

    @pytest.mark.asyncio
    async def test_no_push_without_provider(self, service, job_store):
        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert result.success is True
        assert job_store.jobs == {}

    @pytest.mark.asyncio
    async def test_enqueue_failure_does_not_fail_booking(
        self, service, event_store, job_store, make_provider
    ):
        make_provider()
        job_store.fail_enqueue = True

        result = await service.create_booking(make_request(owner_id="owner-a"))

        assert result.success is True
        assert result.booking_id in event_store.events


class TestManualEvent:
    @pytest.mark.asyncio
    async def test_naive_times_read_in_event_timezone(self, service, event_store, job_store, make_provider):
        make_provider()
        event = CalendarEvent(
            tenant_id="tenant-1",
            owner_id="owner-a",
            title="Dentist",
            start_time=datetime(2025, 1, 7, 9, 0),
            end_time=datetime(2025, 1, 7, 10, 0),
            timezone="America/New_York",
            booked_by=BookedBy.EXTERNAL,
            sync_source=SyncSource.GOOGLE,
        )

        saved = await service.create_event(event)

        stored = event_store.events[saved.id]
        assert stored.start_time == datetime(2025, 1, 7, 14, 0, tzinfo=UTC)
        assert stored.booked_by == BookedBy.USER
        assert stored.sync_source == SyncSource.INTERNAL
        assert stored.calendar_provider_id == "prov-1"
        [job] = job_store.pending(SyncJobKind.PUSH_EVENT)
        assert job.event_id == saved.id

    @pytest.mark.asyncio
    async def test_push_can_be_skipped(self, service, job_store, make_provider):
        make_provider()

        await service.create_event(busy("owner-a", TEN_AM), push=False)

        assert job_store.jobs == {}

    @pytest.mark.asyncio
    async def test_overlap_with_booking_is_rejected(self, service):
        await service.create_booking(make_request(owner_id="owner-a"))

        with pytest.raises(SlotNoLongerAvailable):
            await service.create_event(busy("owner-a", TEN_AM + timedelta(minutes=15)))

class TestCancelBooking:
    @pytest.mark.asyncio
    async def test_cancel_marks_event_and_pushes(self, service, event_store, job_store, make_provider):
        make_provider()
        booked = await service.create_booking(make_request(owner_id="owner-a"))
        job_store.jobs.clear()

        result = await service.cancel_booking(booked.booking_id)

        assert result.success is True
        assert event_store.events[booked.booking_id].status == EventStatus.CANCELLED
        [job] = job_store.pending(SyncJobKind.PUSH_EVENT)
        assert job.event_id == booked.booking_id

    @pytest.mark.asyncio
    async def test_cancel_twice_succeeds(self, service, event_store):
        booked = await service.create_booking(make_request(owner_id="owner-a"))

        first = await service.cancel_booking(booked.booking_id)
        second = await service.cancel_booking(booked.booking_id)

        assert first.success is True
        assert second.success is True
        assert event_store.events[booked.booking_id].status == EventStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_booking(self, service):
        result = await service.cancel_booking("missing")

        assert result.success is False
        assert result.error_code == "booking_not_found"

    @pytest.mark.asyncio
    async def test_cancelled_slot_can_be_rebooked(self, service):
        booked = await service.create_booking(make_request(owner_id="owner-a"))
        await service.cancel_booking(booked.booking_id)

        rebooked = await service.create_booking(make_request(owner_id="owner-a"))

        assert rebooked.success is True


@pytest.mark.asyncio
async def test_list_bookings_filters_by_status(service):
    kept = await service.create_booking(make_request(owner_id="owner-a"))
    dropped = await service.create_booking(
        make_request(owner_id="owner-a", start_time=TEN_AM + timedelta(hours=1))
    )
    await service.cancel_booking(dropped.booking_id)

    confirmed = await service.list_bookings("tenant-1", status=EventStatus.CONFIRMED)

    assert [e.id for e in confirmed] == [kept.booking_id]


def test_generate_confirmation_code_varies():
    codes = {generate_confirmation_code() for _ in range(20)}

    assert len(codes) > 1


def test_render_template_blanks_missing_values():
    request = make_request(notes=None, attendee=AttendeeContact(name="Sam", phone="+1555"))

    assert render_template("{{customer_email}}|{{notes}}|{{customer_name}}", request) == "||Sam"
