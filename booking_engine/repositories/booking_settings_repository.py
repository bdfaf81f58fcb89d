# booking_engine/repositories/booking_settings_repository.py
"""Persistence for per-tenant/per-agent booking settings."""

from datetime import datetime

from booking_engine.db.helpers import fetch_one, fetch_val, with_db_retry
from booking_engine.db.pool import DatabasePoolManager
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.booking_domain import BookingSettings

logger = get_logger(__name__)


class BookingSettingsRepository:
    def __init__(self, db: DatabasePoolManager):
        self._db = db

    @staticmethod
    def _row_to_settings(row: dict | None) -> BookingSettings | None:
        if not row:
            return None

        return BookingSettings(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            agent_id=str(row["agent_id"]) if row.get("agent_id") else None,
            assignable_users=row.get("assignable_users") or [],
            distribution_strategy=row["distribution_strategy"],
            event_type_config=row.get("event_type_config") or {},
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, tenant_id: str, agent_id: str | None) -> BookingSettings | None:
        query = """
            SELECT id, tenant_id, agent_id, assignable_users,
                   distribution_strategy, event_type_config
            FROM booking_settings
            WHERE tenant_id = %s AND agent_id IS NOT DISTINCT FROM %s
        """
        return self._row_to_settings(await fetch_one(self._db, query, (tenant_id, agent_id)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def next_round_robin_user(
        self, tenant_id: str, agent_id: str | None, start: datetime, end: datetime
    ) -> str | None:
        """
        Pick the next free owner in rotation.

        get_next_available_user locks the settings row and advances the
        stored cursor inside this transaction.
        """
        query = "SELECT get_next_available_user(%s, %s, %s, %s) AS user_id"
        async with self._db.transaction() as conn:
            user_id = await fetch_val(
                self._db, query, (tenant_id, agent_id, start, end), connection=conn
            )

        logger.debug(
            "Round-robin selection",
            tenant_id=tenant_id,
            agent_id=agent_id,
            selected=str(user_id) if user_id else None,
        )
        return str(user_id) if user_id else None
