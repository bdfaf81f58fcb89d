"""
Availability engine.

Turns an owner's weekly availability rule into bookable slots for one
calendar date: schedule intervals are stepped by the slot duration, trimmed
by booking notice, and filtered against existing events with buffers.
"""

import asyncio
from datetime import UTC, date, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking_engine.errors import InvalidTimezone
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.calendar_domain import AvailabilityRule, CalendarEvent, TimeSlot
from booking_engine.repositories.interfaces import (
    AvailabilityRuleStore,
    BookingSettingsStore,
    CalendarEventStore,
    UserStore,
)
from booking_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

Interval = tuple[datetime, datetime]


def resolve_timezone(name: str | None, strict: bool = False) -> tzinfo:
    """
    Look up an IANA zone.

    Lenient mode treats unknown names as UTC and logs a warning; strict mode
    raises InvalidTimezone.
    """
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        if strict:
            raise InvalidTimezone(name) from e
        logger.warning("Unknown timezone, falling back to UTC", timezone=name)
        return UTC


def generate_slots(rule: AvailabilityRule, day: date, duration: int, tz: tzinfo) -> list[Interval]:
    """
    Step each interval of the day's schedule by `duration` minutes.

    Only slots that end at or before the interval end are emitted. Returns
    nothing when the date is overridden as unavailable.
    """
    override = rule.override_for(day)
    if override and not override.available:
        return []

    step = timedelta(minutes=duration)
    slots = []
    for interval in rule.intervals_for(day):
        interval_start, interval_end = interval.bounds_on(day, tz)
        current = interval_start
        while current + step <= interval_end:
            slots.append((current, current + step))
            current += step
    return slots


def apply_booking_notice(
    slots: list[Interval], now: datetime, min_notice: int, max_notice: int
) -> list[Interval]:
    earliest = now + timedelta(minutes=min_notice)
    latest = now + timedelta(minutes=max_notice)
    return [(start, end) for start, end in slots if earliest <= start <= latest]


def slot_conflicts(
    start: datetime,
    end: datetime,
    events: list[CalendarEvent],
    buffer_before: int = 0,
    buffer_after: int = 0,
) -> bool:
    """Half-open overlap of the buffered slot against any live event."""
    buffered_start = start - timedelta(minutes=buffer_before)
    buffered_end = end + timedelta(minutes=buffer_after)
    return any(
        not event.is_cancelled and event.overlaps(buffered_start, buffered_end) for event in events
    )


def filter_conflicting_slots(
    slots: list[Interval],
    events: list[CalendarEvent],
    buffer_before: int,
    buffer_after: int,
) -> list[Interval]:
    return [
        (start, end)
        for start, end in slots
        if not slot_conflicts(start, end, events, buffer_before, buffer_after)
    ]


class AvailabilityService:
    def __init__(
        self,
        rule_store: AvailabilityRuleStore,
        event_store: CalendarEventStore,
        settings_store: BookingSettingsStore,
        user_store: UserStore,
        clock: Clock = utc_now,
        strict_timezones: bool = False,
    ):
        self._rules = rule_store
        self._events = event_store
        self._settings = settings_store
        self._users = user_store
        self._clock = clock
        self._strict_timezones = strict_timezones

    async def compute_slots(
        self,
        owner_id: str,
        day: date,
        duration: int | None = None,
        timezone: str | None = None,
    ) -> list[TimeSlot]:
        """
        Bookable slots for one owner on a calendar date, ascending by start.

        Args:
            owner_id: Staff member whose rule governs the slots
            day: Calendar date in the schedule's timezone
            duration: Slot length in minutes (defaults to the rule's slot_duration)
            timezone: IANA zone overriding the rule's timezone

        Raises:
            InvalidTimezone: only when strict timezone validation is enabled
        """
        if duration is not None and duration <= 0:
            raise ValueError("duration must be positive")

        rule = await self._rules.get_governing_rule(owner_id)
        if rule is None:
            logger.info("No active availability rule, no slots", owner_id=owner_id)
            return []

        tz = resolve_timezone(timezone or rule.timezone, self._strict_timezones)
        slot_minutes = duration or rule.slot_duration

        candidates = generate_slots(rule, day, slot_minutes, tz)
        candidates = apply_booking_notice(
            candidates, self._clock(), rule.min_booking_notice, rule.max_booking_notice
        )
        if not candidates:
            return []

        # Any event touching the buffered span of the day's candidates
        window_start = candidates[0][0] - timedelta(minutes=rule.buffer_before)
        window_end = candidates[-1][1] + timedelta(minutes=rule.buffer_after)
        events = await self._events.list_busy_events(owner_id, window_start, window_end)

        available = filter_conflicting_slots(
            candidates, events, rule.buffer_before, rule.buffer_after
        )

        logger.debug(
            "Slots computed",
            owner_id=owner_id,
            date=day.isoformat(),
            candidates=len(candidates),
            events=len(events),
            available=len(available),
        )
        return [TimeSlot(start=start, end=end, owner_id=owner_id) for start, end in sorted(available)]

    async def resolve_team(
        self,
        tenant_id: str,
        owner_ids: list[str] | None = None,
        agent_id: str | None = None,
    ) -> list[str]:
        """Explicit owners, else the agent's assignable users, else every owner with an active rule."""
        if owner_ids:
            return list(dict.fromkeys(owner_ids))

        if agent_id:
            booking_settings = await self._settings.get(tenant_id, agent_id)
            if booking_settings and booking_settings.assignable_users:
                return booking_settings.owner_ids

        return await self._rules.list_active_owner_ids(tenant_id)

    async def compute_team_slots(
        self,
        tenant_id: str,
        day: date,
        duration: int | None = None,
        timezone: str | None = None,
        owner_ids: list[str] | None = None,
        agent_id: str | None = None,
    ) -> list[TimeSlot]:
        """Union of every candidate owner's slots, labelled with the owner's name."""
        team = await self.resolve_team(tenant_id, owner_ids, agent_id)
        if not team:
            return []

        per_owner = await asyncio.gather(
            *(self.compute_slots(owner_id, day, duration, timezone) for owner_id in team)
        )
        names = await self._users.get_display_names(team)

        slots = [
            TimeSlot(
                start=slot.start,
                end=slot.end,
                owner_id=slot.owner_id,
                owner_name=names.get(slot.owner_id),
            )
            for owner_slots in per_owner
            for slot in owner_slots
        ]
        slots.sort(key=lambda slot: (slot.start, team.index(slot.owner_id)))

        logger.info(
            "Team slots computed",
            tenant_id=tenant_id,
            agent_id=agent_id,
            owners=len(team),
            slots=len(slots),
        )
        return slots

    async def is_slot_available(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: str | None = None,
    ) -> bool:
        """Atomic store-side re-check, buffer-aware."""
        return await self._events.is_slot_available(owner_id, start, end, exclude_event_id)
