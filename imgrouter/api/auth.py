"""Bearer token handling for the admin API and the gateway."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from imgrouter.services.key_pool import KeyPoolManager

security = HTTPBearer(auto_error=False)


def get_key_pool(request: Request) -> KeyPoolManager:
    return request.app.state.key_pool


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    pool: KeyPoolManager = Depends(get_key_pool),
) -> Optional[str]:
    """Verify the admin Bearer token against the stored access token.

    An empty access token means the admin API is open.
    """
    access_token = pool.settings.access_token
    if not access_token:
        return None
    if credentials is None or credentials.credentials != access_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing authentication token",
        )
    return credentials.credentials


async def bearer_credential(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Extract the caller's credential from the Authorization header."""
    token = credentials.credentials.strip() if credentials else ""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
        )
    return token
