# booking_engine/repositories/calendar_provider_repository.py
"""Persistence for calendar_providers (external calendar connections)."""

from datetime import datetime

from booking_engine.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from booking_engine.db.pool import DatabasePoolManager
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.provider_domain import CalendarProvider, ProviderStatus

logger = get_logger(__name__)


class CalendarProviderRepositoryError(DatabaseError):
    """Raised when a provider write does not return the expected row."""


class CalendarProviderRepository:
    PROVIDER_COLUMNS = """
        id, user_id, tenant_id, provider, access_token, refresh_token,
        token_expires_at, provider_email, calendar_id, sync_token,
        sync_enabled, status, last_synced_at
    """

    def __init__(self, db: DatabasePoolManager):
        self._db = db

    @staticmethod
    def _row_to_provider(row: dict | None) -> CalendarProvider | None:
        if not row:
            return None

        refresh_token = row.get("refresh_token")
        return CalendarProvider(
            id=str(row["id"]),
            owner_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            provider=row["provider"],
            access_token=bytes(row["access_token"]),
            refresh_token=bytes(refresh_token) if refresh_token is not None else None,
            token_expires_at=row.get("token_expires_at"),
            provider_email=row.get("provider_email"),
            calendar_id=row.get("calendar_id"),
            sync_token=row.get("sync_token"),
            sync_enabled=row["sync_enabled"],
            status=row["status"],
            last_synced_at=row.get("last_synced_at"),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, provider_id: str) -> CalendarProvider | None:
        query = f"SELECT {self.PROVIDER_COLUMNS} FROM calendar_providers WHERE id = %s"
        return self._row_to_provider(await fetch_one(self._db, query, (provider_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_active_for_owner(
        self, owner_id: str, provider: str = "google"
    ) -> CalendarProvider | None:
        query = f"""
            SELECT {self.PROVIDER_COLUMNS}
            FROM calendar_providers
            WHERE user_id = %s AND provider = %s AND status = 'active'
            ORDER BY updated_at DESC
            LIMIT 1
        """
        return self._row_to_provider(await fetch_one(self._db, query, (owner_id, provider)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_syncable(self) -> list[CalendarProvider]:
        query = f"""
            SELECT {self.PROVIDER_COLUMNS}
            FROM calendar_providers
            WHERE sync_enabled = true AND status IN ('active', 'error')
            ORDER BY last_synced_at NULLS FIRST
        """
        rows = await fetch_all(self._db, query)
        return [self._row_to_provider(row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def update_tokens(
        self,
        provider_id: str,
        access_token: bytes,
        expires_at: datetime,
        refresh_token: bytes | None = None,
    ) -> None:
        """Persist a refreshed access token. The refresh token is only replaced when supplied."""
        query = """
            UPDATE calendar_providers
            SET access_token = %s,
                token_expires_at = %s,
                refresh_token = COALESCE(%s, refresh_token),
                status = 'active',
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (access_token, expires_at, refresh_token, provider_id))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def update_status(self, provider_id: str, status: ProviderStatus) -> None:
        query = """
            UPDATE calendar_providers
            SET status = %s, updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (status.value, provider_id))
        logger.info("Provider status updated", provider_id=provider_id, status=status.value)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def complete_sync(
        self, provider_id: str, sync_token: str | None, synced_at: datetime
    ) -> None:
        query = """
            UPDATE calendar_providers
            SET sync_token = COALESCE(%s, sync_token),
                last_synced_at = %s,
                status = 'active',
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (sync_token, synced_at, provider_id))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def clear_sync_token(self, provider_id: str) -> None:
        query = """
            UPDATE calendar_providers
            SET sync_token = NULL, updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (provider_id,))

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
    ) -> CalendarProvider:
        """Create or re-activate the owner's Google connection for an account."""
        query = f"""
            INSERT INTO calendar_providers (
                user_id, tenant_id, provider, provider_email, access_token,
                refresh_token, token_expires_at, calendar_id, status, sync_enabled
            )
            VALUES (%s, %s, 'google', %s, %s, %s, %s, %s, 'active', true)
            ON CONFLICT (user_id, provider, provider_email) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, calendar_providers.refresh_token),
                token_expires_at = EXCLUDED.token_expires_at,
                calendar_id = EXCLUDED.calendar_id,
                status = 'active',
                sync_enabled = true,
                updated_at = NOW()
            RETURNING {self.PROVIDER_COLUMNS}
        """
        row = await fetch_one(
            self._db,
            query,
            (
                owner_id,
                tenant_id,
                provider_email,
                access_token,
                refresh_token,
                expires_at,
                calendar_id,
            ),
        )
        if not row:
            raise CalendarProviderRepositoryError(
                "Provider upsert returned no row", operation="upsert_connection"
            )
        return self._row_to_provider(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def deactivate(self, provider_id: str) -> None:
        query = """
            UPDATE calendar_providers
            SET status = 'inactive',
                sync_enabled = false,
                sync_token = NULL,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(self._db, query, (provider_id,))
