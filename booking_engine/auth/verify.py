"""
verify.py
---------
Purpose:
    Bearer checks for the internal HTTP surface.

Notes:
    - Calendar routes expect `Authorization: Bearer <INTERNAL_API_KEY>`.
    - The cron route expects `Authorization: Bearer <CRON_SECRET>`.
    - Comparisons are constant-time.
"""

import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from booking_engine.config import settings

_security = HTTPBearer(auto_error=False)


def verify_secret(credentials: HTTPAuthorizationCredentials | None, expected: str | None) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def internal_api_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> None:
    verify_secret(credentials, settings.INTERNAL_API_KEY)


def cron_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> None:
    verify_secret(credentials, settings.CRON_SECRET)
