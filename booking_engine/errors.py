"""
Error taxonomy for the availability, booking and sync engine.

Lower layers raise their own exceptions (DatabaseError, GoogleCalendarError,
GoogleOAuthError, EncryptionError); services translate them into these.
"""


class CalendarEngineError(Exception):
    """Base exception for engine operations."""

    code = "calendar_error"
    user_message = "Something went wrong while handling the calendar request."

    def __init__(self, message: str | None = None, recoverable: bool = True):
        super().__init__(message or self.user_message)
        self.recoverable = recoverable


class InvalidTimezone(CalendarEngineError):
    code = "invalid_timezone"
    user_message = "The timezone provided is not recognised."

    def __init__(self, timezone_name: str):
        super().__init__(f"Unknown timezone: {timezone_name!r}", recoverable=False)
        self.timezone_name = timezone_name


# ---------------------------------------------------------------------------
# Availability rules
# ---------------------------------------------------------------------------


class RuleNotFound(CalendarEngineError):
    code = "rule_not_found"
    user_message = "Availability rule not found"


# ---------------------------------------------------------------------------
# Booking path
# ---------------------------------------------------------------------------


class BookingError(CalendarEngineError):
    """Errors recovered into a failed BookingResult by the orchestrator."""


class NoAssignableUser(BookingError):
    code = "no_assignable_user"
    user_message = "No staff members are set up to take bookings."


class NoAvailableUser(BookingError):
    code = "no_available_user"
    user_message = "No one was available at that time."


class SlotNoLongerAvailable(BookingError):
    code = "slot_no_longer_available"
    user_message = "Time slot is no longer available"


class BookingNotFound(BookingError):
    code = "booking_not_found"
    user_message = "Booking not found"


class PersistenceError(BookingError):
    code = "persistence_error"
    user_message = "We couldn't save the booking right now. Please try again."


# ---------------------------------------------------------------------------
# Provider / sync path
# ---------------------------------------------------------------------------


class ProviderError(CalendarEngineError):
    """External calendar provider failure. Recoverable unless stated otherwise."""

    code = "provider_error"
    user_message = "The connected calendar could not be reached."

    def __init__(
        self,
        message: str | None = None,
        provider_id: str | None = None,
        recoverable: bool = True,
        status_code: int | None = None,
    ):
        super().__init__(message, recoverable=recoverable)
        self.provider_id = provider_id
        self.status_code = status_code


class ProviderUnauthorized(ProviderError):
    """Refresh failed or consent revoked; needs re-authorization."""

    code = "provider_unauthorized"
    user_message = "Calendar authorization expired. Please reconnect."

    def __init__(self, message: str | None = None, provider_id: str | None = None, **kwargs):
        kwargs["recoverable"] = False
        super().__init__(message, provider_id=provider_id, **kwargs)


class ProviderRateLimited(ProviderError):
    code = "provider_rate_limited"
    user_message = "Too many calendar requests. Please try again later."


class SyncCursorInvalid(ProviderError):
    """Incremental sync token rejected; triggers a full sync."""

    code = "sync_cursor_invalid"
