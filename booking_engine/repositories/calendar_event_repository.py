# booking_engine/repositories/calendar_event_repository.py
"""
Persistence for calendar_events.

Internal bookings and synced external events share the table. The exclusion
constraint on live internal rows is what actually prevents double booking;
a violation surfaces as SlotNoLongerAvailable.
"""

from datetime import datetime

from psycopg.types.json import Jsonb

from booking_engine.db.helpers import (
    EXCLUSION_VIOLATION,
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from booking_engine.db.pool import DatabasePoolManager
from booking_engine.errors import PersistenceError, SlotNoLongerAvailable
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.calendar_domain import CalendarEvent, EventStatus

logger = get_logger(__name__)


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


class CalendarEventRepository:
    EVENT_COLUMNS = """
        id, tenant_id, user_id, calendar_provider_id, external_event_id,
        title, description, location, start_time, end_time, timezone, all_day,
        status, booked_by, agent_id, call_id, attendees, sync_source, metadata,
        created_at, updated_at
    """

    def __init__(self, db: DatabasePoolManager):
        self._db = db

    @staticmethod
    def _row_to_event(row: dict | None) -> CalendarEvent | None:
        if not row:
            return None

        return CalendarEvent(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            owner_id=_str_or_none(row.get("user_id")),
            calendar_provider_id=_str_or_none(row.get("calendar_provider_id")),
            external_event_id=row.get("external_event_id"),
            title=row["title"],
            description=row.get("description"),
            location=row.get("location"),
            start_time=row["start_time"],
            end_time=row["end_time"],
            timezone=row.get("timezone") or "UTC",
            all_day=row.get("all_day", False),
            status=row["status"],
            booked_by=row["booked_by"],
            agent_id=_str_or_none(row.get("agent_id")),
            call_id=row.get("call_id"),
            attendees=row.get("attendees") or [],
            sync_source=row["sync_source"],
            metadata=row.get("metadata") or {},
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _event_params(event: CalendarEvent) -> tuple:
        return (
            event.tenant_id,
            event.owner_id,
            event.calendar_provider_id,
            event.external_event_id,
            event.title,
            event.description,
            event.location,
            event.start_time,
            event.end_time,
            event.timezone,
            event.all_day,
            event.status.value,
            event.booked_by.value,
            event.agent_id,
            event.call_id,
            Jsonb([a.model_dump(exclude_none=True) for a in event.attendees]),
            event.sync_source.value,
            Jsonb(event.metadata),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_busy_events(
        self, owner_id: str, window_start: datetime, window_end: datetime
    ) -> list[CalendarEvent]:
        """Non-cancelled events for the owner overlapping [window_start, window_end)."""
        query = f"""
            SELECT {self.EVENT_COLUMNS}
            FROM calendar_events
            WHERE user_id = %s
              AND status <> 'cancelled'
              AND start_time < %s
              AND end_time > %s
            ORDER BY start_time
        """
        rows = await fetch_all(self._db, query, (owner_id, window_end, window_start))
        return [self._row_to_event(row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def is_slot_available(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_event_id: str | None = None,
    ) -> bool:
        query = "SELECT check_slot_availability(%s, %s, %s, %s) AS available"
        available = await fetch_val(self._db, query, (owner_id, start, end, exclude_event_id))
        return available is True

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def count_upcoming(self, owner_id: str, start: datetime, end: datetime) -> int:
        query = """
            SELECT COUNT(*) AS total
            FROM calendar_events
            WHERE user_id = %s
              AND status <> 'cancelled'
              AND start_time >= %s
              AND start_time <= %s
        """
        return await fetch_val(self._db, query, (owner_id, start, end)) or 0

    async def insert(self, event: CalendarEvent) -> CalendarEvent:
        """
        Insert a new event row.

        Raises:
            SlotNoLongerAvailable: the exclusion constraint rejected the row
            PersistenceError: any other storage failure
        """
        query = f"""
            INSERT INTO calendar_events (
                tenant_id, user_id, calendar_provider_id, external_event_id,
                title, description, location, start_time, end_time, timezone, all_day,
                status, booked_by, agent_id, call_id, attendees, sync_source, metadata
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.EVENT_COLUMNS}
        """
        try:
            row = await fetch_one(self._db, query, self._event_params(event))
        except DatabaseError as e:
            if e.sqlstate == EXCLUSION_VIOLATION:
                logger.info(
                    "Booking rejected by exclusion constraint",
                    owner_id=event.owner_id,
                    start_time=event.start_time.isoformat(),
                )
                raise SlotNoLongerAvailable() from e
            raise PersistenceError(f"Failed to insert calendar event: {e}") from e

        if not row:
            raise PersistenceError("Insert returned no row")

        return self._row_to_event(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, event_id: str) -> CalendarEvent | None:
        query = f"SELECT {self.EVENT_COLUMNS} FROM calendar_events WHERE id = %s"
        return self._row_to_event(await fetch_one(self._db, query, (event_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_cancelled(self, event_id: str) -> CalendarEvent | None:
        query = f"""
            UPDATE calendar_events
            SET status = 'cancelled', updated_at = NOW()
            WHERE id = %s
            RETURNING {self.EVENT_COLUMNS}
        """
        return self._row_to_event(await fetch_one(self._db, query, (event_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def set_external_id(
        self, event_id: str, provider_id: str, external_event_id: str
    ) -> None:
        query = """
            UPDATE calendar_events
            SET calendar_provider_id = %s, external_event_id = %s, updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (provider_id, external_event_id, event_id))

    async def upsert_external(self, event: CalendarEvent) -> bool:
        """
        Insert or update a synced event keyed by (provider, external id).

        Only calendar-owned fields are overwritten. Rows that originated here
        keep their sync_source, booked_by and attendee contact details, and
        metadata is merged. A booking cancelled here stays cancelled until
        its delete has been pushed. Returns True when a new row was inserted.
        """
        query = """
            INSERT INTO calendar_events (
                tenant_id, user_id, calendar_provider_id, external_event_id,
                title, description, location, start_time, end_time, timezone, all_day,
                status, booked_by, agent_id, call_id, attendees, sync_source, metadata
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (calendar_provider_id, external_event_id) DO UPDATE SET
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                location = EXCLUDED.location,
                start_time = EXCLUDED.start_time,
                end_time = EXCLUDED.end_time,
                timezone = EXCLUDED.timezone,
                all_day = EXCLUDED.all_day,
                status = CASE
                    WHEN calendar_events.sync_source = 'internal'
                         AND calendar_events.status = 'cancelled' THEN calendar_events.status
                    ELSE EXCLUDED.status
                END,
                attendees = CASE
                    WHEN calendar_events.sync_source = 'internal' THEN calendar_events.attendees
                    ELSE EXCLUDED.attendees
                END,
                metadata = calendar_events.metadata || EXCLUDED.metadata,
                updated_at = NOW()
            RETURNING (xmax = 0) AS inserted
        """
        row = await fetch_one(self._db, query, self._event_params(event))
        return bool(row and row["inserted"])

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_cancelled_by_external_id(
        self, provider_id: str, external_event_id: str
    ) -> bool:
        """Flip a known synced event to cancelled. Unknown ids are ignored."""
        query = """
            UPDATE calendar_events
            SET status = 'cancelled', updated_at = NOW()
            WHERE calendar_provider_id = %s
              AND external_event_id = %s
              AND status <> 'cancelled'
        """
        return await execute_query(self._db, query, (provider_id, external_event_id)) > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def delete_external_only(self, provider_id: str) -> int:
        """Remove rows that only exist because of this provider's sync."""
        query = """
            DELETE FROM calendar_events
            WHERE calendar_provider_id = %s AND sync_source <> 'internal'
        """
        deleted = await execute_query(self._db, query, (provider_id,))
        logger.info("Deleted synced external events", provider_id=provider_id, count=deleted)
        return deleted

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_events(
        self,
        tenant_id: str,
        *,
        owner_id: str | None = None,
        agent_id: str | None = None,
        status: EventStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]:
        clauses = ["tenant_id = %s"]
        params: list = [tenant_id]

        if owner_id:
            clauses.append("user_id = %s")
            params.append(owner_id)
        if agent_id:
            clauses.append("agent_id = %s")
            params.append(agent_id)
        if status:
            clauses.append("status = %s")
            params.append(status.value)
        if start:
            clauses.append("end_time > %s")
            params.append(start)
        if end:
            clauses.append("start_time < %s")
            params.append(end)

        query = f"""
            SELECT {self.EVENT_COLUMNS}
            FROM calendar_events
            WHERE {" AND ".join(clauses)}
            ORDER BY start_time
        """
        rows = await fetch_all(self._db, query, tuple(params))
        return [self._row_to_event(row) for row in rows]
