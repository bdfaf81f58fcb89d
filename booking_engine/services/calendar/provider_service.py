"""
Calendar provider lifecycle: connecting a Google account after consent and
disconnecting it again.
"""

from booking_engine.errors import ProviderError
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.domain.provider_domain import CalendarProvider, SyncJobKind
from booking_engine.repositories.interfaces import (
    CalendarEventStore,
    CalendarProviderStore,
    SyncJobStore,
)
from booking_engine.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from booking_engine.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_oauth_tokens,
)
from booking_engine.services.token_service import calculate_token_expiry
from booking_engine.utils.clock import Clock, utc_now

logger = get_logger(__name__)


class ProviderConnectionError(ProviderError):
    """OAuth callback could not be completed."""

    code = "provider_connection_failed"
    user_message = "We couldn't connect that calendar. Please try again."


class CalendarProviderService:
    def __init__(
        self,
        provider_store: CalendarProviderStore,
        event_store: CalendarEventStore,
        job_store: SyncJobStore,
        oauth_service: GoogleOAuthService,
        clock: Clock = utc_now,
    ):
        self._providers = provider_store
        self._events = event_store
        self._jobs = job_store
        self._oauth = oauth_service
        self._clock = clock

    def authorization_url(self, state: str) -> str:
        return self._oauth.generate_oauth_url(state)

    async def handle_oauth_callback(
        self, owner_id: str, tenant_id: str, authorization_code: str
    ) -> CalendarProvider:
        """
        Complete a Google connection after consent.

        Exchanges the code, looks up the account email, stores the encrypted
        tokens (reconnecting the same account updates the existing row) and
        enqueues a full sync.

        Raises:
            ProviderConnectionError: exchange or account lookup failed
        """
        try:
            tokens = await self._oauth.exchange_code_for_tokens(authorization_code)
            provider_email = await self._oauth.fetch_account_email(tokens.access_token)
        except GoogleOAuthError as e:
            logger.error(
                "Calendar connection failed",
                owner_id=owner_id,
                error=str(e),
                error_code=e.error_code,
            )
            raise ProviderConnectionError(str(e), recoverable=False, status_code=e.status_code) from e

        encrypted_access, encrypted_refresh = encrypt_oauth_tokens(
            tokens.access_token, tokens.refresh_token
        )
        provider = await self._providers.upsert_connection(
            owner_id=owner_id,
            tenant_id=tenant_id,
            provider_email=provider_email,
            access_token=encrypted_access,
            refresh_token=encrypted_refresh,
            expires_at=calculate_token_expiry(tokens.expires_in, self._clock()),
            calendar_id="primary",
        )

        job = await self._jobs.enqueue(SyncJobKind.FULL_SYNC, provider.id)

        logger.info(
            "Calendar connected",
            owner_id=owner_id,
            provider_id=provider.id,
            has_refresh_token=encrypted_refresh is not None,
            full_sync_enqueued=job is not None,
        )
        return provider

    async def disconnect(self, provider_id: str) -> bool:
        """
        Revoke (best effort), drop synced-only events and deactivate.

        Returns False when the provider does not exist.
        """
        provider = await self._providers.get(provider_id)
        if provider is None:
            return False

        revoked = False
        token = provider.refresh_token or provider.access_token
        try:
            revoked = await self._oauth.revoke_token(decrypt_token(token))
        except EncryptionError as e:
            logger.warning("Stored token unreadable, skipping revocation", provider_id=provider_id, error=str(e))

        deleted = await self._events.delete_external_only(provider_id)
        await self._providers.deactivate(provider_id)

        logger.info(
            "Calendar disconnected",
            provider_id=provider_id,
            owner_id=provider.owner_id,
            revoked=revoked,
            external_events_deleted=deleted,
        )
        return True
