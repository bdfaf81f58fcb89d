"""
Token Service for calendar provider credentials.

Encrypts tokens for storage, decides when an access token is expired, and
refreshes-and-persists before any provider call. A failed refresh moves the
provider to `expired` (grant revoked) or `error` (anything else); it is never
retried in a loop here.
"""

from datetime import UTC, datetime, timedelta

from booking_engine.errors import ProviderError, ProviderUnauthorized
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.provider_domain import CalendarProvider, ProviderStatus
from booking_engine.repositories.interfaces import CalendarProviderStore
from booking_engine.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from booking_engine.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
)
from booking_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)

TOKEN_EXPIRY_BUFFER_MINUTES = 5


def is_token_expired(
    expires_at: datetime | None,
    buffer_minutes: int = TOKEN_EXPIRY_BUFFER_MINUTES,
    now: datetime | None = None,
) -> bool:
    """
    True when the token expires within `buffer_minutes`.

    A missing expiry counts as expired so the caller refreshes.
    """
    if expires_at is None:
        return True

    now = now or utc_now()
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)

    return expires_at - timedelta(minutes=buffer_minutes) <= now


def calculate_token_expiry(expires_in: int, now: datetime | None = None) -> datetime:
    return (now or utc_now()) + timedelta(seconds=expires_in)


class TokenService:
    """Refresh-and-persist of provider access tokens."""

    def __init__(
        self,
        provider_store: CalendarProviderStore,
        oauth_service: GoogleOAuthService,
        clock: Clock = utc_now,
        buffer_minutes: int = TOKEN_EXPIRY_BUFFER_MINUTES,
    ):
        self._providers = provider_store
        self._oauth = oauth_service
        self._clock = clock
        self._buffer_minutes = buffer_minutes

    async def ensure_valid_access_token(self, provider: CalendarProvider) -> str:
        """
        Return a usable plaintext access token for the provider.

        Refreshes and persists first when the stored token is expired.

        Raises:
            ProviderUnauthorized: consent revoked or no refresh token; provider is now `expired`
            ProviderError: transient refresh failure; provider is now `error`
        """
        if not is_token_expired(provider.token_expires_at, self._buffer_minutes, self._clock()):
            try:
                return decrypt_token(provider.access_token)
            except EncryptionError as e:
                # Unreadable token: fall through and try to refresh
                logger.warning(
                    "Stored access token unreadable, refreshing",
                    provider_id=provider.id,
                    error=str(e),
                )

        return await self.refresh(provider)

    async def refresh(self, provider: CalendarProvider) -> str:
        if provider.refresh_token is None:
            await self._providers.update_status(provider.id, ProviderStatus.EXPIRED)
            raise ProviderUnauthorized(
                "No refresh token available - re-authorization required",
                provider_id=provider.id,
            )

        try:
            refresh_token = decrypt_token(provider.refresh_token)
        except EncryptionError as e:
            await self._providers.update_status(provider.id, ProviderStatus.EXPIRED)
            raise ProviderUnauthorized(
                "Stored refresh token is unreadable", provider_id=provider.id
            ) from e

        try:
            token_response = await self._oauth.refresh_access_token(refresh_token)
        except GoogleOAuthError as e:
            if e.is_revoked_grant:
                logger.warning(
                    "Refresh token rejected - provider needs re-authorization",
                    provider_id=provider.id,
                    error_code=e.error_code,
                )
                await self._providers.update_status(provider.id, ProviderStatus.EXPIRED)
                raise ProviderUnauthorized(str(e), provider_id=provider.id) from e

            logger.error(
                "Token refresh failed",
                provider_id=provider.id,
                error=str(e),
                status_code=e.status_code,
            )
            await self._providers.update_status(provider.id, ProviderStatus.ERROR)
            raise ProviderError(
                f"Token refresh failed: {e}", provider_id=provider.id, status_code=e.status_code
            ) from e

        expires_at = calculate_token_expiry(token_response.expires_in, self._clock())
        new_refresh = (
            encrypt_token(token_response.refresh_token)
            if token_response.refresh_token and token_response.refresh_token != refresh_token
            else None
        )
        encrypted_access = encrypt_token(token_response.access_token)
        await self._providers.update_tokens(
            provider.id,
            encrypted_access,
            expires_at,
            refresh_token=new_refresh,
        )

        # Later calls on this snapshot within the same sync or push reuse the new token
        provider.access_token = encrypted_access
        provider.token_expires_at = expires_at
        if new_refresh is not None:
            provider.refresh_token = new_refresh
        provider.status = ProviderStatus.ACTIVE

        logger.info(
            "Access token refreshed",
            provider_id=provider.id,
            expires_at=expires_at.isoformat(),
            rotated_refresh_token=new_refresh is not None,
        )
        return token_response.access_token
