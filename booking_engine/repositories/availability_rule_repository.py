"""Postgres access for availability rules."""

from psycopg import AsyncConnection
from psycopg.types.json import Jsonb

from booking_engine.db.helpers import (
    DatabaseError,
    execute_query,
    fetch_all,
    fetch_one,
    with_db_retry,
)
from booking_engine.db.pool import DatabasePoolManager
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.calendar_domain import AvailabilityRule

logger = get_logger(__name__)


class AvailabilityRuleRepository:
    RULE_COLUMNS = """
        id, tenant_id, user_id, name, description, schedule, timezone,
        date_overrides, slot_duration, buffer_before, buffer_after,
        min_booking_notice, max_booking_notice, is_default, active, created_at
    """

    def __init__(self, db: DatabasePoolManager):
        self._db = db

    @staticmethod
    def _row_to_rule(row: dict | None) -> AvailabilityRule | None:
        if not row:
            return None

        return AvailabilityRule(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            owner_id=str(row["user_id"]),
            name=row["name"],
            description=row.get("description"),
            schedule=row.get("schedule") or {},
            timezone=row.get("timezone") or "UTC",
            date_overrides=row.get("date_overrides") or [],
            slot_duration=row["slot_duration"],
            buffer_before=row["buffer_before"],
            buffer_after=row["buffer_after"],
            min_booking_notice=row["min_booking_notice"],
            max_booking_notice=row["max_booking_notice"],
            is_default=row["is_default"],
            active=row["active"],
            created_at=row.get("created_at"),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_governing_rule(self, owner_id: str) -> AvailabilityRule | None:
        """Active rule for the owner, default first, newest first."""
        query = f"""
            SELECT {self.RULE_COLUMNS}
            FROM availability_rules
            WHERE user_id = %s AND active = true
            ORDER BY is_default DESC, created_at DESC
            LIMIT 1
        """
        row = await fetch_one(self._db, query, (owner_id,))
        if not row:
            logger.debug("No active availability rule", owner_id=owner_id)
        return self._row_to_rule(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_active_owner_ids(self, tenant_id: str) -> list[str]:
        query = """
            SELECT DISTINCT user_id
            FROM availability_rules
            WHERE tenant_id = %s AND active = true
            ORDER BY user_id
        """
        rows = await fetch_all(self._db, query, (tenant_id,))
        return [str(row["user_id"]) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, rule_id: str) -> AvailabilityRule | None:
        query = f"SELECT {self.RULE_COLUMNS} FROM availability_rules WHERE id = %s"
        return self._row_to_rule(await fetch_one(self._db, query, (rule_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_for_owner(
        self, owner_id: str, include_inactive: bool = True
    ) -> list[AvailabilityRule]:
        """Owner's rules in governing order: default first, then newest."""
        query = f"""
            SELECT {self.RULE_COLUMNS}
            FROM availability_rules
            WHERE user_id = %s AND (%s OR active = true)
            ORDER BY is_default DESC, created_at DESC
        """
        rows = await fetch_all(self._db, query, (owner_id, include_inactive))
        return [self._row_to_rule(row) for row in rows]

    @staticmethod
    def _rule_params(rule: AvailabilityRule) -> tuple:
        data = rule.model_dump(mode="json")
        return (
            rule.name,
            rule.description,
            Jsonb(data["schedule"]),
            rule.timezone,
            Jsonb(data["date_overrides"]),
            rule.slot_duration,
            rule.buffer_before,
            rule.buffer_after,
            rule.min_booking_notice,
            rule.max_booking_notice,
            rule.is_default,
            rule.active,
        )

    async def _clear_default(
        self, conn: AsyncConnection, owner_id: str, keep_rule_id: str | None = None
    ) -> None:
        await execute_query(
            self._db,
            """
            UPDATE availability_rules
            SET is_default = false, updated_at = NOW()
            WHERE user_id = %s AND is_default AND id IS DISTINCT FROM %s
            """,
            (owner_id, keep_rule_id),
            connection=conn,
        )

    async def create(self, rule: AvailabilityRule) -> AvailabilityRule:
        """
        Insert a rule. A new default demotes the owner's previous default in the
        same transaction.
        """
        query = f"""
            INSERT INTO availability_rules (
                tenant_id, user_id, name, description, schedule, timezone,
                date_overrides, slot_duration, buffer_before, buffer_after,
                min_booking_notice, max_booking_notice, is_default, active
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.RULE_COLUMNS}
        """
        async with self._db.transaction() as conn:
            if rule.is_default:
                await self._clear_default(conn, rule.owner_id)
            row = await fetch_one(
                self._db,
                query,
                (rule.tenant_id, rule.owner_id, *self._rule_params(rule)),
                connection=conn,
            )

        if not row:
            raise DatabaseError("Rule insert returned no row", operation="create_rule")

        logger.info(
            "Availability rule created",
            rule_id=str(row["id"]),
            owner_id=rule.owner_id,
            is_default=rule.is_default,
        )
        return self._row_to_rule(row)

    async def update(self, rule: AvailabilityRule) -> AvailabilityRule | None:
        """Overwrite every editable column of an existing rule. None if it is gone."""
        query = f"""
            UPDATE availability_rules SET
                name = %s,
                description = %s,
                schedule = %s,
                timezone = %s,
                date_overrides = %s,
                slot_duration = %s,
                buffer_before = %s,
                buffer_after = %s,
                min_booking_notice = %s,
                max_booking_notice = %s,
                is_default = %s,
                active = %s,
                updated_at = NOW()
            WHERE id = %s
            RETURNING {self.RULE_COLUMNS}
        """
        async with self._db.transaction() as conn:
            if rule.is_default:
                await self._clear_default(conn, rule.owner_id, keep_rule_id=rule.id)
            row = await fetch_one(
                self._db, query, (*self._rule_params(rule), rule.id), connection=conn
            )

        if row:
            logger.info("Availability rule updated", rule_id=rule.id, active=rule.active)
        return self._row_to_rule(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def delete(self, rule_id: str) -> bool:
        deleted = await execute_query(
            self._db, "DELETE FROM availability_rules WHERE id = %s", (rule_id,)
        )
        if deleted:
            logger.info("Availability rule deleted", rule_id=rule_id)
        return deleted > 0
