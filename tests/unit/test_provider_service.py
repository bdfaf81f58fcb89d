"""
Tests for connecting and disconnecting Google calendars.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from booking_engine.models.domain.calendar_domain import CalendarEvent, SyncSource
from booking_engine.models.domain.provider_domain import ProviderStatus, SyncJobKind
from booking_engine.services.calendar.provider_service import (
    CalendarProviderService,
    ProviderConnectionError,
)
from booking_engine.services.google_oauth_service import GoogleOAuthError, TokenResponse
from booking_engine.services.infrastructure.encryption_service import decrypt_token

NOW = datetime(2025, 1, 6, 8, 0, tzinfo=UTC)


@pytest.fixture
def oauth():
    mock = AsyncMock()
    mock.exchange_code_for_tokens.return_value = TokenResponse(
        {"access_token": "ya29.access", "refresh_token": "1//refresh", "expires_in": 3599}
    )
    mock.fetch_account_email.return_value = "alice@gmail.com"
    mock.revoke_token.return_value = True
    return mock


@pytest.fixture
def service(provider_store, event_store, job_store, oauth, clock):
    return CalendarProviderService(provider_store, event_store, job_store, oauth, clock=clock)


@pytest.mark.asyncio
async def test_callback_stores_encrypted_tokens(service, provider_store, job_store, oauth):
    provider = await service.handle_oauth_callback("owner-a", "tenant-1", "auth-code")

    oauth.exchange_code_for_tokens.assert_awaited_once_with("auth-code")
    stored = provider_store.providers[provider.id]
    assert stored.provider_email == "alice@gmail.com"
    assert stored.status == ProviderStatus.ACTIVE
    assert stored.access_token != b"ya29.access"
    assert decrypt_token(stored.access_token) == "ya29.access"
    assert decrypt_token(stored.refresh_token) == "1//refresh"
    assert stored.token_expires_at == NOW + timedelta(seconds=3599)

    [job] = job_store.pending(SyncJobKind.FULL_SYNC)
    assert job.provider_id == provider.id


@pytest.mark.asyncio
async def test_reconnect_keeps_provider_id(service, provider_store):
    first = await service.handle_oauth_callback("owner-a", "tenant-1", "code-1")
    second = await service.handle_oauth_callback("owner-a", "tenant-1", "code-2")

    assert first.id == second.id
    assert len(provider_store.providers) == 1


@pytest.mark.asyncio
async def test_failed_exchange_raises_connection_error(service, provider_store, oauth):
    oauth.exchange_code_for_tokens.side_effect = GoogleOAuthError(
        "denied", error_code="invalid_grant", status_code=400
    )

    with pytest.raises(ProviderConnectionError) as exc:
        await service.handle_oauth_callback("owner-a", "tenant-1", "bad-code")

    assert exc.value.recoverable is False
    assert provider_store.providers == {}


@pytest.mark.asyncio
async def test_disconnect_revokes_and_keeps_bookings(
    service, make_provider, provider_store, event_store, oauth
):
    make_provider()
    start = datetime(2025, 1, 7, 10, 0, tzinfo=UTC)
    for source, external_id in ((SyncSource.GOOGLE, "g-ext"), (SyncSource.INTERNAL, "g-booked")):
        event_store.add(
            CalendarEvent(
                tenant_id="tenant-1",
                owner_id="owner-a",
                calendar_provider_id="prov-1",
                external_event_id=external_id,
                title=source.value,
                start_time=start,
                end_time=start + timedelta(minutes=30),
                sync_source=source,
            )
        )

    assert await service.disconnect("prov-1") is True

    oauth.revoke_token.assert_awaited_once_with("refresh-token")
    assert [e.sync_source for e in event_store.events.values()] == [SyncSource.INTERNAL]
    stored = provider_store.providers["prov-1"]
    assert stored.status == ProviderStatus.INACTIVE
    assert stored.sync_enabled is False


@pytest.mark.asyncio
async def test_disconnect_survives_failed_revocation(service, make_provider, provider_store, oauth):
    make_provider()
    oauth.revoke_token.return_value = False

    assert await service.disconnect("prov-1") is True
    assert provider_store.providers["prov-1"].status == ProviderStatus.INACTIVE


@pytest.mark.asyncio
async def test_disconnect_unknown_provider(service):
    assert await service.disconnect("missing") is False


def test_authorization_url_delegates(service, oauth):
    oauth.generate_oauth_url = lambda state: f"https://accounts.google.com/?state={state}"

    assert service.authorization_url("abc").endswith("state=abc")
