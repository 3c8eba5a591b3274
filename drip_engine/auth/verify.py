"""
verify.py
---------
Purpose:
    Bearer-token check for operator endpoints.

Notes:
    - Compares against ADMIN_API_TOKEN in constant time.
    - Admin routes are closed when no token is configured.
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from drip_engine.config import settings

_security = HTTPBearer()


def verify_admin_token(token: str) -> None:
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API token not configured",
        )

    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def admin_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> None:
    verify_admin_token(credentials.credentials)
