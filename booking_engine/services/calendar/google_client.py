"""
Google Calendar API client.
Low-level HTTP calls for events, calendar list and free/busy queries.
Callers supply a valid access token; see provider_client for the
provider-bound wrapper that refreshes tokens.
"""

import asyncio
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.google_calendar_domain import (
    BusyPeriod,
    CalendarInfo,
    EventPage,
    FreeBusyResult,
    GoogleEvent,
)

logger = get_logger(__name__)

# Google Calendar API configuration
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleCalendarError(Exception):
    """Custom exception for Google Calendar API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def is_sync_token_invalid(self) -> bool:
        """Google answers 410 Gone when a sync token is expired or invalid."""
        return self.status_code == 410 or "sync token" in str(self).lower()


def _isoformat(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class GoogleCalendarService:
    """
    Service for Google Calendar API operations.

    Handles calendar list, event CRUD and free/busy with retry on transient
    HTTP failures.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, backoff_factor: float = BACKOFF_FACTOR):
        self._client = client or self._create_client()
        self._backoff_factor = backoff_factor

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = self._backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Calendar API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise
                backoff = self._backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Calendar API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Calendar API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Calendar API response.

        Raises:
            GoogleCalendarError: If response contains errors
        """
        logger.debug(
            f"Calendar API {operation} response",
            status_code=response.status_code,
            response_size=len(response.text) if response.text else 0,
        )

        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Calendar API {operation} response", error=str(e))
                raise GoogleCalendarError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"Calendar API {operation} failed with non-JSON response",
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise GoogleCalendarError(
                f"Calendar API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {})
        if not isinstance(error_info, dict):
            error_info = {"message": str(error_info)}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Calendar API error")

        logger.error(
            f"Calendar API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GoogleCalendarError(
            f"{self._map_calendar_error(error_code)} ({error_message})",
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_calendar_error(self, error_code: str) -> str:
        error_mappings = {
            "400": "Invalid calendar request format.",
            "401": "Calendar authorization expired. Please reconnect.",
            "403": "Calendar access denied. Please check permissions.",
            "404": "Calendar or event not found.",
            "410": "Sync token is no longer valid.",
            "429": "Too many calendar requests. Please try again later.",
            "500": "Google Calendar service temporarily unavailable.",
        }
        return error_mappings.get(error_code, "Calendar error.")

    async def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        url = f"{CALENDAR_API_BASE_URL}/users/me/calendarList"
        response = await self._request_with_retry(
            "GET", url, headers=self._get_auth_headers(access_token)
        )
        data = self._handle_api_response(response, "list_calendars")

        calendars = [CalendarInfo(item) for item in data.get("items", [])]
        logger.info("Calendars listed successfully", calendar_count=len(calendars))
        return calendars

    async def list_events_page(
        self,
        access_token: str,
        calendar_id: str = CALENDAR_PRIMARY,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
        max_results: int = 250,
    ) -> EventPage:
        """
        Fetch one page of events.

        With a sync token only changes since that token are returned, including
        cancelled events; Google rejects time bounds and ordering in that mode.
        Without one, recurring events are expanded inside [time_min, time_max).

        Raises:
            GoogleCalendarError: status 410 when the sync token is no longer valid
        """
        params: dict[str, Any] = {"maxResults": max_results, "singleEvents": "true"}

        if sync_token:
            params["syncToken"] = sync_token
        else:
            if time_min:
                params["timeMin"] = _isoformat(time_min)
            if time_max:
                params["timeMax"] = _isoformat(time_max)

        if page_token:
            params["pageToken"] = page_token

        logger.debug(
            "Listing calendar events",
            calendar_id=calendar_id,
            incremental=bool(sync_token),
            has_page_token=bool(page_token),
        )

        response = await self._request_with_retry(
            "GET",
            self._events_url(calendar_id),
            headers=self._get_auth_headers(access_token),
            params=params,
        )
        data = self._handle_api_response(response, "list_events")

        return EventPage(
            events=[GoogleEvent(item) for item in data.get("items", [])],
            next_page_token=data.get("nextPageToken"),
            next_sync_token=data.get("nextSyncToken"),
        )

    async def get_event(
        self, access_token: str, event_id: str, calendar_id: str = CALENDAR_PRIMARY
    ) -> GoogleEvent:
        response = await self._request_with_retry(
            "GET",
            self._events_url(calendar_id, event_id),
            headers=self._get_auth_headers(access_token),
        )
        return GoogleEvent(self._handle_api_response(response, "get_event"))

    async def create_event(
        self, access_token: str, body: dict[str, Any], calendar_id: str = CALENDAR_PRIMARY
    ) -> GoogleEvent:
        logger.info(
            "Creating calendar event",
            summary=body.get("summary"),
            calendar_id=calendar_id,
        )
        response = await self._request_with_retry(
            "POST",
            self._events_url(calendar_id),
            headers=self._get_auth_headers(access_token),
            json=body,
        )
        event = GoogleEvent(self._handle_api_response(response, "create_event"))
        logger.info("Event created successfully", external_event_id=event.id)
        return event

    async def update_event(
        self,
        access_token: str,
        event_id: str,
        body: dict[str, Any],
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> GoogleEvent:
        """Patch only the fields present in body."""
        logger.info(
            "Updating calendar event",
            external_event_id=event_id,
            calendar_id=calendar_id,
            fields_updated=list(body.keys()),
        )
        response = await self._request_with_retry(
            "PATCH",
            self._events_url(calendar_id, event_id),
            headers=self._get_auth_headers(access_token),
            json=body,
        )
        return GoogleEvent(self._handle_api_response(response, "update_event"))

    async def delete_event(
        self, access_token: str, event_id: str, calendar_id: str = CALENDAR_PRIMARY
    ) -> bool:
        logger.info("Deleting calendar event", external_event_id=event_id, calendar_id=calendar_id)
        response = await self._request_with_retry(
            "DELETE",
            self._events_url(calendar_id, event_id),
            headers=self._get_auth_headers(access_token),
        )

        # Success is 204 No Content
        if response.status_code != 204:
            self._handle_api_response(response, "delete_event")
        return True

    async def free_busy(
        self,
        access_token: str,
        start_time: datetime,
        end_time: datetime,
        calendar_ids: list[str] | None = None,
    ) -> FreeBusyResult:
        calendar_ids = calendar_ids or [CALENDAR_PRIMARY]
        query_data = {
            "timeMin": _isoformat(start_time),
            "timeMax": _isoformat(end_time),
            "items": [{"id": cal_id} for cal_id in calendar_ids],
        }

        response = await self._request_with_retry(
            "POST",
            f"{CALENDAR_API_BASE_URL}/freeBusy",
            headers=self._get_auth_headers(access_token),
            json=query_data,
        )
        data = self._handle_api_response(response, "free_busy")

        result = FreeBusyResult(time_min=start_time, time_max=end_time)
        for cal_id in calendar_ids:
            calendar_busy = data.get("calendars", {}).get(cal_id, {})
            result.busy[cal_id] = [
                BusyPeriod(
                    start=datetime.fromisoformat(period["start"].replace("Z", "+00:00")),
                    end=datetime.fromisoformat(period["end"].replace("Z", "+00:00")),
                )
                for period in calendar_busy.get("busy", [])
            ]
            if calendar_busy.get("errors"):
                result.errors[cal_id] = calendar_busy["errors"]

        logger.info(
            "Free/busy query completed",
            is_free=result.is_free,
            calendars_checked=len(calendar_ids),
        )
        return result
