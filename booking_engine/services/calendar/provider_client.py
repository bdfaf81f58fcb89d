"""
Provider-bound Google Calendar client.

Wraps GoogleCalendarService so every call runs with a fresh access token for
one CalendarProvider, and translates HTTP failures into the engine's
provider error types.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import httpx

from booking_engine.errors import (
    ProviderError,
    ProviderRateLimited,
    ProviderUnauthorized,
    SyncCursorInvalid,
)
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.google_calendar_domain import (
    CalendarInfo,
    EventPage,
    FreeBusyResult,
    GoogleEvent,
)
from booking_engine.models.domain.provider_domain import CalendarProvider
from booking_engine.services.calendar.google_client import GoogleCalendarError, GoogleCalendarService
from booking_engine.services.token_service import TokenService

logger = get_logger(__name__)

T = TypeVar("T")


def translate_calendar_error(e: GoogleCalendarError, provider_id: str) -> ProviderError:
    status = e.status_code
    if status == 401:
        return ProviderUnauthorized(str(e), provider_id=provider_id, status_code=status)
    if e.is_sync_token_invalid:
        return SyncCursorInvalid(str(e), provider_id=provider_id, status_code=status)
    if status == 429:
        return ProviderRateLimited(str(e), provider_id=provider_id, status_code=status)
    # 5xx and unknown statuses are worth retrying, other 4xx are not
    recoverable = status is None or status >= 500
    return ProviderError(str(e), provider_id=provider_id, recoverable=recoverable, status_code=status)


class ProviderCalendarClient:
    def __init__(self, calendar_service: GoogleCalendarService, token_service: TokenService):
        self._calendar = calendar_service
        self._tokens = token_service

    async def _call(
        self,
        provider: CalendarProvider,
        operation: str,
        func: Callable[[str], Awaitable[T]],
    ) -> T:
        access_token = await self._tokens.ensure_valid_access_token(provider)
        try:
            try:
                return await func(access_token)
            except GoogleCalendarError as e:
                if e.status_code != 401:
                    raise
                # Stored token rejected before its recorded expiry: refresh once
                logger.info(
                    "Access token rejected, forcing refresh",
                    provider_id=provider.id,
                    operation=operation,
                )
                access_token = await self._tokens.refresh(provider)
                return await func(access_token)
        except GoogleCalendarError as e:
            raise translate_calendar_error(e, provider.id) from e
        except httpx.RequestError as e:
            logger.warning(
                "Calendar provider unreachable",
                provider_id=provider.id,
                operation=operation,
                error=str(e),
            )
            raise ProviderError(
                f"Network error during {operation}: {e}", provider_id=provider.id
            ) from e

    async def list_events_page(
        self,
        provider: CalendarProvider,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
        max_results: int = 250,
    ) -> EventPage:
        return await self._call(
            provider,
            "list_events",
            lambda token: self._calendar.list_events_page(
                token,
                provider.target_calendar_id,
                time_min=time_min,
                time_max=time_max,
                sync_token=sync_token,
                page_token=page_token,
                max_results=max_results,
            ),
        )

    async def get_event(self, provider: CalendarProvider, event_id: str) -> GoogleEvent:
        return await self._call(
            provider,
            "get_event",
            lambda token: self._calendar.get_event(token, event_id, provider.target_calendar_id),
        )

    async def create_event(self, provider: CalendarProvider, body: dict[str, Any]) -> GoogleEvent:
        return await self._call(
            provider,
            "create_event",
            lambda token: self._calendar.create_event(token, body, provider.target_calendar_id),
        )

    async def update_event(
        self, provider: CalendarProvider, event_id: str, body: dict[str, Any]
    ) -> GoogleEvent:
        return await self._call(
            provider,
            "update_event",
            lambda token: self._calendar.update_event(
                token, event_id, body, provider.target_calendar_id
            ),
        )

    async def delete_event(self, provider: CalendarProvider, event_id: str) -> bool:
        return await self._call(
            provider,
            "delete_event",
            lambda token: self._calendar.delete_event(token, event_id, provider.target_calendar_id),
        )

    async def list_calendars(self, provider: CalendarProvider) -> list[CalendarInfo]:
        return await self._call(provider, "list_calendars", self._calendar.list_calendars)

    async def free_busy(
        self, provider: CalendarProvider, start_time: datetime, end_time: datetime
    ) -> FreeBusyResult:
        return await self._call(
            provider,
            "free_busy",
            lambda token: self._calendar.free_busy(
                token, start_time, end_time, [provider.target_calendar_id]
            ),
        )
