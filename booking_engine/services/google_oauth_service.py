"""
Google OAuth Service for Calendar API access.
Handles consent URL generation, code exchange, token refresh, revocation and
account email lookup.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

import httpx

from booking_engine.config import Settings
from booking_engine.infrastructure.observability.logging import get_logger, token_preview

logger = get_logger(__name__)

# OAuth configuration
GOOGLE_OAUTH_BASE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

# Google omits expires_in on some responses; assume the standard hour
DEFAULT_EXPIRES_IN = 3600

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4, 8 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Errors meaning the grant itself is gone, not a transient failure
REVOKED_GRANT_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


class GoogleOAuthError(Exception):
    """Custom exception for Google OAuth-related errors."""

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
    def is_revoked_grant(self) -> bool:
        """True when the refresh token will never work again."""
        return self.error_code in REVOKED_GRANT_ERRORS or self.status_code in (400, 401)


class TokenResponse:
    """Structured representation of OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        self.scope = data.get("scope", "")
        self.expires_at = datetime.now(UTC) + timedelta(seconds=self.expires_in)

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)

    def has_calendar_access(self) -> bool:
        return "calendar" in self.scope


class GoogleOAuthService:
    """
    Service for Google OAuth 2.0 operations with the Calendar API.

    Handles token exchange, refresh and revocation with retry on transient
    HTTP failures.
    """

    def __init__(self, settings: Settings):
        self.client_id = settings.GOOGLE_CLIENT_ID
        self.client_secret = settings.GOOGLE_CLIENT_SECRET
        self.redirect_uri = settings.google_redirect_uri()

    def _validate_config(self) -> None:
        if not self.client_id:
            raise GoogleOAuthError("GOOGLE_CLIENT_ID not configured")
        if not self.client_secret:
            raise GoogleOAuthError("GOOGLE_CLIENT_SECRET not configured")

    async def _request_with_retry(
        self, method: str, url: str, operation: str, **kwargs
    ) -> httpx.Response:
        """Perform a request with retry/backoff handling."""
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.request(method, url, **kwargs)

                    if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        wait_time = BACKOFF_FACTOR**attempt
                        logger.warning(
                            "Google OAuth transient status",
                            operation=operation,
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    return response

                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise

                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Google OAuth request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise GoogleOAuthError(f"{operation} failed: retries exhausted")

    def generate_oauth_url(self, state: str) -> str:
        """Consent URL requesting offline Calendar access."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(CALENDAR_SCOPES),
            "response_type": "code",
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        return f"{GOOGLE_OAUTH_BASE_URL}?{urlencode(params)}"

    async def exchange_code_for_tokens(self, authorization_code: str) -> TokenResponse:
        """
        Exchange authorization code for access and refresh tokens.

        Raises:
            GoogleOAuthError: If token exchange fails
        """
        self._validate_config()
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": authorization_code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }

        logger.info("Exchanging authorization code", code_preview=token_preview(authorization_code))

        try:
            response = await self._request_with_retry(
                "POST", GOOGLE_TOKEN_URL, "code_exchange", data=data
            )
        except httpx.RequestError as e:
            logger.error("Network error during token exchange", error=str(e))
            raise GoogleOAuthError(f"Network error during token exchange: {e}") from e

        return self._handle_token_response(response, "code_exchange")

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Refresh access token using refresh token.

        Raises:
            GoogleOAuthError: If token refresh fails; check is_revoked_grant
        """
        self._validate_config()
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        logger.info("Refreshing access token", refresh_token_preview=token_preview(refresh_token))

        try:
            response = await self._request_with_retry(
                "POST", GOOGLE_TOKEN_URL, "token_refresh", data=data
            )
        except httpx.RequestError as e:
            logger.error("Network error during token refresh", error=str(e))
            raise GoogleOAuthError(f"Network error during token refresh: {e}") from e

        token_response = self._handle_token_response(response, "token_refresh")

        # Google usually omits the refresh token on refresh
        if not token_response.refresh_token:
            token_response.refresh_token = refresh_token

        return token_response

    async def revoke_token(self, token: str) -> bool:
        """Revoke access or refresh token. Best effort: returns False on any failure."""
        try:
            response = await self._request_with_retry(
                "POST", GOOGLE_REVOKE_URL, "token_revocation", data={"token": token}
            )
        except (httpx.RequestError, GoogleOAuthError) as e:
            logger.error(
                "Error during token revocation", token_preview=token_preview(token), error=str(e)
            )
            return False

        success = response.status_code == 200
        if success:
            logger.info("Calendar token revoked")
        else:
            logger.warning(
                "Token revocation failed",
                status_code=response.status_code,
                response_text=response.text[:200],
            )
        return success

    async def fetch_account_email(self, access_token: str) -> str:
        """Email address of the Google account that granted access."""
        try:
            response = await self._request_with_retry(
                "GET",
                GOOGLE_USERINFO_URL,
                "userinfo",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as e:
            raise GoogleOAuthError(f"Network error fetching account info: {e}") from e

        if not response.is_success:
            raise GoogleOAuthError(
                f"Failed to fetch account info (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        email = response.json().get("email")
        if not email:
            raise GoogleOAuthError("Google account info did not include an email")
        return email

    def _handle_token_response(self, response: httpx.Response, operation: str) -> TokenResponse:
        """
        Handle and validate token response from Google.

        Raises:
            GoogleOAuthError: If response is invalid or contains errors
        """
        logger.debug(
            f"Google {operation} response",
            status_code=response.status_code,
            response_size=len(response.text),
        )

        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                logger.error(
                    f"Google {operation} failed with non-JSON response",
                    status_code=response.status_code,
                    response_text=response.text[:200],
                )
                raise GoogleOAuthError(
                    f"Google OAuth service error (HTTP {response.status_code})",
                    status_code=response.status_code,
                ) from None

            error_code = error_data.get("error", "unknown_error")
            logger.error(
                f"Google {operation} failed",
                status_code=response.status_code,
                error_code=error_code,
                error_description=error_data.get("error_description", "No description provided"),
            )
            raise GoogleOAuthError(
                self._map_google_error(error_code),
                error_code=error_code,
                status_code=response.status_code,
                response_data=error_data,
            )

        try:
            token_response = TokenResponse(response.json())
        except ValueError as e:
            raise GoogleOAuthError(f"Failed to parse Google response: {e}") from e

        if not token_response.is_valid():
            raise GoogleOAuthError("Invalid token response from Google")

        logger.info(
            f"Google {operation} successful",
            expires_in=token_response.expires_in,
            has_refresh_token=bool(token_response.refresh_token),
            has_calendar_access=token_response.has_calendar_access(),
        )
        return token_response

    def _map_google_error(self, error_code: str) -> str:
        error_messages = {
            "access_denied": "Calendar access was denied. Please connect again and grant access.",
            "invalid_grant": "Calendar authorization expired or was revoked. Please reconnect.",
            "invalid_client": "Calendar connection configuration error. Please contact support.",
            "invalid_request": "Invalid calendar connection request. Please try again.",
            "unauthorized_client": "Calendar connection not authorized. Please contact support.",
        }
        return error_messages.get(
            error_code, f"Calendar connection failed ({error_code}). Please try again."
        )
