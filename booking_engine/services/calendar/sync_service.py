"""
Calendar Sync Engine.

Pulls events from a connected Google calendar into calendar_events (full
window sync or incremental by sync token) and pushes locally booked events
back out. Every operation for one provider runs under the Redis lock
`calendar_sync:{provider_id}`, so a sync and a push never interleave.
"""

import asyncio
from contextlib import AbstractAsyncContextManager
from datetime import timedelta
from typing import Protocol

from booking_engine.db.helpers import EXCLUSION_VIOLATION, DatabaseError
from booking_engine.errors import ProviderError, ProviderUnauthorized, SyncCursorInvalid
from booking_engine.infrastructure.observability.logging import get_logger, log_sync_result
from booking_engine.models.domain.google_calendar_domain import GoogleEvent, event_to_google_body
from booking_engine.models.domain.provider_domain import (
    CalendarProvider,
    ProviderStatus,
    SyncResult,
)
from booking_engine.repositories.interfaces import CalendarEventStore, CalendarProviderStore
from booking_engine.services.calendar.provider_client import ProviderCalendarClient
from booking_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

SYNC_PAST_DAYS = 30
SYNC_FUTURE_DAYS = 90
SYNC_PAGE_SIZE = 250
SYNC_LOCK_TTL_SECONDS = 300
MAX_CONCURRENT_SYNCS = 5

PROVIDER_NOT_FOUND = "Provider not found"

# Remote event already gone
GONE_STATUS_CODES = {404, 410}


class LockProvider(Protocol):
    def lock(self, key: str, ttl_s: int) -> AbstractAsyncContextManager[bool]: ...


def sync_lock_key(provider_id: str) -> str:
    return f"calendar_sync:{provider_id}"


def summarize_results(results: list[SyncResult]) -> dict:
    return {
        "providers": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "skipped": sum(1 for r in results if r.skipped),
        "failed": sum(1 for r in results if not r.success and not r.skipped),
        "events_created": sum(r.events_created for r in results),
        "events_updated": sum(r.events_updated for r in results),
        "events_deleted": sum(r.events_deleted for r in results),
        "results": [r.to_dict() for r in results],
    }


class SyncService:
    def __init__(
        self,
        provider_store: CalendarProviderStore,
        event_store: CalendarEventStore,
        calendar_client: ProviderCalendarClient,
        locks: LockProvider,
        clock: Clock = utc_now,
        *,
        past_days: int = SYNC_PAST_DAYS,
        future_days: int = SYNC_FUTURE_DAYS,
        page_size: int = SYNC_PAGE_SIZE,
        lock_ttl_s: int = SYNC_LOCK_TTL_SECONDS,
        max_concurrent: int = MAX_CONCURRENT_SYNCS,
    ):
        self._providers = provider_store
        self._events = event_store
        self._client = calendar_client
        self._locks = locks
        self._clock = clock
        self._past_days = past_days
        self._future_days = future_days
        self._page_size = page_size
        self._lock_ttl_s = lock_ttl_s
        self._max_concurrent = max_concurrent

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def full_sync(self, provider_id: str) -> SyncResult:
        return await self._sync(provider_id, force_full=True)

    async def incremental_sync(self, provider_id: str) -> SyncResult:
        """Sync changes since the stored cursor; falls back to a full sync when there is none."""
        return await self._sync(provider_id, force_full=False)

    async def sync_all_providers(self) -> list[SyncResult]:
        """Incremental sync of every syncable provider with bounded concurrency."""
        providers = await self._providers.list_syncable()
        if not providers:
            logger.info("No providers to sync")
            return []

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _one(provider_id: str) -> SyncResult:
            async with semaphore:
                try:
                    return await self.incremental_sync(provider_id)
                except Exception as e:
                    logger.exception("Provider sync crashed", provider_id=provider_id)
                    return SyncResult(provider_id=provider_id, error=f"{type(e).__name__}: {e}")

        results = await asyncio.gather(*(_one(p.id) for p in providers))
        logger.info(
            "Provider sync sweep finished",
            providers=len(results),
            failed=sum(1 for r in results if not r.success and not r.skipped),
        )
        return list(results)

    async def _sync(self, provider_id: str, force_full: bool) -> SyncResult:
        result = SyncResult(provider_id=provider_id, full_sync=force_full)

        provider = await self._providers.get(provider_id)
        if provider is None:
            result.error = PROVIDER_NOT_FOUND
            result.recoverable = False
            log_sync_result(result)
            return result

        if not provider.is_syncable:
            result.skipped = True
            result.recoverable = False
            result.error = f"Provider not syncable (status={provider.status.value})"
            log_sync_result(result)
            return result

        async with self._locks.lock(sync_lock_key(provider_id), self._lock_ttl_s) as acquired:
            if not acquired:
                result.skipped = True
                result.error = "Sync already in progress"
                log_sync_result(result)
                return result

            try:
                if force_full or not provider.sync_token:
                    result.full_sync = True
                    await self._run_full_sync(provider, result)
                else:
                    try:
                        await self._run_incremental_sync(provider, result)
                    except SyncCursorInvalid:
                        logger.info(
                            "Sync token rejected, falling back to full sync",
                            provider_id=provider_id,
                        )
                        await self._providers.clear_sync_token(provider_id)
                        result.full_sync = True
                        await self._run_full_sync(provider, result)
                result.success = True

            except ProviderUnauthorized as e:
                result.error = str(e)
                result.recoverable = False
                await self._providers.update_status(provider_id, ProviderStatus.EXPIRED)

            except ProviderError as e:
                result.error = str(e)
                result.recoverable = e.recoverable
                await self._providers.update_status(provider_id, ProviderStatus.ERROR)

            except DatabaseError as e:
                # Cursor untouched; the next run resumes from the same place
                result.error = f"Database error during sync: {e}"
                result.recoverable = e.recoverable
                await self._mark_error(provider_id)

            except Exception as e:
                logger.exception("Unexpected sync failure", provider_id=provider_id)
                result.error = f"Unexpected error during sync: {type(e).__name__}: {e}"
                await self._mark_error(provider_id)

        log_sync_result(result)
        return result

    async def _mark_error(self, provider_id: str) -> None:
        try:
            await self._providers.update_status(provider_id, ProviderStatus.ERROR)
        except DatabaseError as e:
            logger.error("Could not mark provider as errored", provider_id=provider_id, error=str(e))

    async def _run_full_sync(self, provider: CalendarProvider, result: SyncResult) -> None:
        now = self._clock()
        events, next_sync_token = await self._fetch_all_pages(
            provider,
            time_min=now - timedelta(days=self._past_days),
            time_max=now + timedelta(days=self._future_days),
        )
        await self._apply_events(provider, events, result)
        await self._providers.complete_sync(provider.id, next_sync_token, self._clock())

    async def _run_incremental_sync(self, provider: CalendarProvider, result: SyncResult) -> None:
        events, next_sync_token = await self._fetch_all_pages(
            provider, sync_token=provider.sync_token
        )
        await self._apply_events(provider, events, result)
        await self._providers.complete_sync(
            provider.id, next_sync_token or provider.sync_token, self._clock()
        )

    async def _fetch_all_pages(
        self, provider: CalendarProvider, **query
    ) -> tuple[list[GoogleEvent], str | None]:
        """Follow pageToken until exhausted. The sync token arrives on the last page."""
        events: list[GoogleEvent] = []
        page_token = None
        pages = 0
        while True:
            page = await self._client.list_events_page(
                provider, page_token=page_token, max_results=self._page_size, **query
            )
            pages += 1
            events.extend(page.events)
            if not page.next_page_token:
                logger.debug(
                    "Fetched calendar event pages",
                    provider_id=provider.id,
                    pages=pages,
                    events=len(events),
                )
                return events, page.next_sync_token
            page_token = page.next_page_token

    async def _apply_events(
        self, provider: CalendarProvider, events: list[GoogleEvent], result: SyncResult
    ) -> None:
        for google_event in events:
            if google_event.is_cancelled():
                if google_event.id and await self._events.mark_cancelled_by_external_id(
                    provider.id, google_event.id
                ):
                    result.events_deleted += 1
                continue

            local = google_event.to_local_event(provider.id, provider.owner_id, provider.tenant_id)
            if local is None:
                result.events_skipped += 1
                continue

            try:
                inserted = await self._events.upsert_external(local)
            except DatabaseError as e:
                if e.sqlstate != EXCLUSION_VIOLATION:
                    raise
                logger.warning(
                    "External event collides with a booking, skipped",
                    provider_id=provider.id,
                    external_event_id=google_event.id,
                )
                result.events_skipped += 1
                result.errors.append(f"{google_event.id}: collides with an existing booking")
                continue

            if inserted:
                result.events_created += 1
            else:
                result.events_updated += 1

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def push_event(self, provider_id: str, event_id: str) -> str | None:
        """
        Mirror one local event to the provider.

        Cancelled events are deleted remotely. Otherwise the remote event is
        patched when its id is known, else created and the new id persisted.

        Returns:
            The external event id, or None when there was nothing to push

        Raises:
            ProviderError: push failed; recoverable unless authorization is gone
        """
        provider = await self._providers.get(provider_id)
        if provider is None or not provider.is_syncable:
            logger.info("Push skipped, provider unavailable", provider_id=provider_id, event_id=event_id)
            return None

        async with self._locks.lock(sync_lock_key(provider_id), self._lock_ttl_s) as acquired:
            if not acquired:
                raise ProviderError("Provider sync in progress", provider_id=provider_id)

            event = await self._events.get(event_id)
            if event is None:
                logger.info("Push skipped, event not found", event_id=event_id)
                return None

            if event.is_cancelled:
                if not event.external_event_id:
                    return None
                try:
                    await self._client.delete_event(provider, event.external_event_id)
                except ProviderError as e:
                    if e.status_code not in GONE_STATUS_CODES:
                        raise
                    logger.info(
                        "Remote event already gone",
                        provider_id=provider_id,
                        external_event_id=event.external_event_id,
                    )
                return event.external_event_id

            body = event_to_google_body(event)

            if event.external_event_id:
                try:
                    await self._client.update_event(provider, event.external_event_id, body)
                except ProviderError as e:
                    if e.status_code not in GONE_STATUS_CODES:
                        raise
                    # Deleted on the calendar side; the next sync flips it to cancelled
                    logger.info(
                        "Remote event missing on update",
                        provider_id=provider_id,
                        external_event_id=event.external_event_id,
                    )
                    return None
                return event.external_event_id

            created = await self._client.create_event(provider, body)
            await self._events.set_external_id(event.id, provider_id, created.id)
            logger.info(
                "Event pushed to calendar",
                provider_id=provider_id,
                event_id=event.id,
                external_event_id=created.id,
            )
            return created.id
