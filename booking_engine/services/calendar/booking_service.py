"""
Booking orchestrator.

Resolves an owner by distribution strategy, re-checks the slot, writes the
event and enqueues the outward push. Every failure comes back as a
BookingResult carrying a message that can be read out to a caller.
"""

import secrets
import string
from datetime import datetime, timedelta

from booking_engine.db.helpers import DatabaseError
from booking_engine.errors import (
    BookingError,
    BookingNotFound,
    NoAssignableUser,
    NoAvailableUser,
    PersistenceError,
    SlotNoLongerAvailable,
)
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.booking_domain import (
    BookingRequest,
    BookingResult,
    BookingSettings,
    CancellationResult,
    DistributionStrategy,
    EventTypeConfig,
)
from booking_engine.models.domain.calendar_domain import (
    Attendee,
    BookedBy,
    CalendarEvent,
    EventStatus,
    SyncSource,
)
from booking_engine.models.domain.provider_domain import SyncJobKind
from booking_engine.repositories.interfaces import (
    BookingSettingsStore,
    CalendarEventStore,
    CalendarProviderStore,
    SyncJobStore,
    UserStore,
)
from booking_engine.services.calendar.availability_service import resolve_timezone

logger = get_logger(__name__)

CONFIRMATION_CODE_LENGTH = 8
CONFIRMATION_CODE_ALPHABET = string.ascii_uppercase + string.digits
LEAST_BUSY_WINDOW = timedelta(days=7)


def generate_confirmation_code() -> str:
    return "".join(
        secrets.choice(CONFIRMATION_CODE_ALPHABET) for _ in range(CONFIRMATION_CODE_LENGTH)
    )


def render_template(template: str, request: BookingRequest) -> str:
    """Substitute every occurrence of the attendee/notes tokens."""
    tokens = {
        "{{customer_name}}": request.attendee.name,
        "{{customer_phone}}": request.attendee.phone,
        "{{customer_email}}": request.attendee.email or "",
        "{{notes}}": request.notes or "",
    }
    for token, value in tokens.items():
        template = template.replace(token, value)
    return template


class BookingService:
    def __init__(
        self,
        event_store: CalendarEventStore,
        settings_store: BookingSettingsStore,
        provider_store: CalendarProviderStore,
        job_store: SyncJobStore,
        user_store: UserStore,
    ):
        self._events = event_store
        self._settings = settings_store
        self._providers = provider_store
        self._jobs = job_store
        self._users = user_store

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_booking(self, request: BookingRequest) -> BookingResult:
        """Book an appointment. Never raises; failures come back as success=False."""
        try:
            return await self._create_booking(request)
        except BookingError as e:
            logger.info(
                "Booking failed",
                tenant_id=request.tenant_id,
                agent_id=request.agent_id,
                error_code=e.code,
                error=str(e),
            )
            return BookingResult(success=False, error=e.user_message, error_code=e.code)
        except DatabaseError as e:
            logger.error("Booking persistence failure", tenant_id=request.tenant_id, error=str(e))
            failure = PersistenceError()
            return BookingResult(success=False, error=failure.user_message, error_code=failure.code)
        except Exception as e:
            logger.exception("Unexpected booking error", tenant_id=request.tenant_id, error=str(e))
            failure = PersistenceError()
            return BookingResult(success=False, error=failure.user_message, error_code=failure.code)

    async def _create_booking(self, request: BookingRequest) -> BookingResult:
        start = request.start_time
        if start.tzinfo is None:
            start = start.replace(tzinfo=resolve_timezone(request.timezone))
        end = start + timedelta(minutes=request.duration_minutes)

        booking_settings = await self._settings.get(request.tenant_id, request.agent_id)
        owner_id = await self._assign_owner(request, booking_settings, start, end)
        names = await self._users.get_display_names([owner_id])

        # Re-check immediately before writing; the exclusion constraint backs this up
        if not await self._events.is_slot_available(owner_id, start, end):
            raise SlotNoLongerAvailable()

        config = booking_settings.event_type_config if booking_settings else EventTypeConfig()
        confirmation_code = generate_confirmation_code()
        provider = await self._providers.get_active_for_owner(owner_id)

        event = CalendarEvent(
            tenant_id=request.tenant_id,
            owner_id=owner_id,
            calendar_provider_id=provider.id if provider else None,
            title=render_template(config.title_template, request),
            description=render_template(config.description_template, request),
            location=config.location,
            start_time=start,
            end_time=end,
            timezone=request.timezone or "UTC",
            status=EventStatus.CONFIRMED,
            booked_by=request.booked_by,
            agent_id=request.agent_id,
            call_id=request.call_id,
            attendees=[
                Attendee(
                    name=request.attendee.name,
                    phone=request.attendee.phone,
                    email=request.attendee.email,
                    status="accepted",
                )
            ],
            sync_source=SyncSource.INTERNAL,
            metadata={"confirmation_code": confirmation_code, "notes": request.notes},
        )
        saved = await self._events.insert(event)

        if provider:
            await self._enqueue_push(provider.id, saved.id)

        logger.info(
            "Booking created",
            event_id=saved.id,
            owner_id=owner_id,
            tenant_id=request.tenant_id,
            agent_id=request.agent_id,
            start_time=start.isoformat(),
        )

        return BookingResult(
            success=True,
            booking_id=saved.id,
            owner_id=owner_id,
            owner_name=names.get(owner_id),
            start_time=start,
            end_time=end,
            confirmation_code=confirmation_code,
        )

    async def _assign_owner(
        self,
        request: BookingRequest,
        booking_settings: BookingSettings | None,
        start: datetime,
        end: datetime,
    ) -> str:
        if request.owner_id:
            if await self._events.is_slot_available(request.owner_id, start, end):
                return request.owner_id
            raise NoAvailableUser()

        if not booking_settings or not booking_settings.assignable_users:
            raise NoAssignableUser()

        strategy = booking_settings.distribution_strategy
        users = booking_settings.assignable_users
        owner_id: str | None = None

        if strategy == DistributionStrategy.SPECIFIC_USER:
            candidate = users[0].user_id
            if await self._events.is_slot_available(candidate, start, end):
                owner_id = candidate

        elif strategy == DistributionStrategy.PRIORITY:
            for user in sorted(users, key=lambda u: u.priority):
                if await self._events.is_slot_available(user.user_id, start, end):
                    owner_id = user.user_id
                    break

        elif strategy == DistributionStrategy.LEAST_BUSY:
            fewest: int | None = None
            for user in users:
                if not await self._events.is_slot_available(user.user_id, start, end):
                    continue
                upcoming = await self._events.count_upcoming(
                    user.user_id, start, start + LEAST_BUSY_WINDOW
                )
                # Strict comparison keeps the first owner on ties
                if fewest is None or upcoming < fewest:
                    fewest = upcoming
                    owner_id = user.user_id

        else:
            owner_id = await self._settings.next_round_robin_user(
                request.tenant_id, request.agent_id, start, end
            )

        logger.debug("Owner assignment", strategy=strategy.value, owner_id=owner_id)

        if owner_id is None:
            raise NoAvailableUser()
        return owner_id

    async def create_event(self, event: CalendarEvent, push: bool = True) -> CalendarEvent:
        """
        Store a manually entered event for an owner and push it to their calendar.

        Naive times are read in the event's own timezone.

        Raises:
            SlotNoLongerAvailable: overlaps another internal event of the owner
            PersistenceError: the row could not be written
        """
        if event.start_time.tzinfo is None:
            tz = resolve_timezone(event.timezone)
            event = event.model_copy(
                update={
                    "start_time": event.start_time.replace(tzinfo=tz),
                    "end_time": event.end_time.replace(tzinfo=tz),
                }
            )

        provider = await self._providers.get_active_for_owner(event.owner_id)
        saved = await self._events.insert(
            event.model_copy(
                update={
                    "calendar_provider_id": provider.id if provider else None,
                    "external_event_id": None,
                    "sync_source": SyncSource.INTERNAL,
                    "booked_by": BookedBy.USER,
                }
            )
        )

        if provider and push:
            await self._enqueue_push(provider.id, saved.id)

        logger.info(
            "Calendar event created",
            event_id=saved.id,
            owner_id=saved.owner_id,
            tenant_id=saved.tenant_id,
            pushed=bool(provider and push),
        )
        return saved

    # ------------------------------------------------------------------
    # Cancel / list
    # ------------------------------------------------------------------

    async def cancel_booking(self, event_id: str) -> CancellationResult:
        """Flip the event to cancelled and propagate outward. Cancelling twice succeeds."""
        try:
            event = await self._events.get(event_id)
            if event is None:
                raise BookingNotFound()

            if event.is_cancelled:
                logger.info("Booking already cancelled", event_id=event_id)
                return CancellationResult(success=True)

            await self._events.mark_cancelled(event_id)
            logger.info("Booking cancelled", event_id=event_id, owner_id=event.owner_id)

            if event.calendar_provider_id:
                await self._enqueue_push(event.calendar_provider_id, event_id)

            return CancellationResult(success=True)

        except BookingError as e:
            return CancellationResult(success=False, error=e.user_message, error_code=e.code)
        except DatabaseError as e:
            logger.error("Cancellation persistence failure", event_id=event_id, error=str(e))
            failure = PersistenceError()
            return CancellationResult(
                success=False, error=failure.user_message, error_code=failure.code
            )

    async def list_bookings(
        self,
        tenant_id: str,
        *,
        owner_id: str | None = None,
        agent_id: str | None = None,
        status: EventStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]:
        return await self._events.list_events(
            tenant_id, owner_id=owner_id, agent_id=agent_id, status=status, start=start, end=end
        )

    async def _enqueue_push(self, provider_id: str, event_id: str) -> None:
        # Outward sync must never fail the booking
        try:
            await self._jobs.enqueue(SyncJobKind.PUSH_EVENT, provider_id, event_id)
        except Exception as e:
            logger.error(
                "Failed to enqueue calendar push",
                provider_id=provider_id,
                event_id=event_id,
                error=str(e),
            )
