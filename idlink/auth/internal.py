"""
internal.py
-----------
Purpose:
    Bearer token check for the internal API called by the chat bot process.

Notes:
    - The token is a shared secret (INTERNAL_API_TOKEN), not a user credential.
    - Provides `internal_auth_dependency` for internal routes.
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from idlink.config import settings

_security = HTTPBearer()


def verify_internal_token(token: str) -> None:
    expected = settings.INTERNAL_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API is not configured",
        )
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def internal_auth_dependency(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> dict:
    verify_internal_token(credentials.credentials)
    return {"sub": "chat-bot"}
