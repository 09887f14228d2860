"""Authentication dependencies for the admin and cron endpoints.

Two guards:
  - require_admin_token()  : flow management endpoints (Bearer token)
  - require_cron_secret()  : the review sweep (Bearer token or X-Cron-Secret header)

Behavior matrix (same for both, with their own secret):
  secret set + valid token   → allow
  secret set + wrong/missing → 401 Unauthorized
  secret empty + DEBUG=true  → allow (local dev convenience)
  secret empty + DEBUG=false → 403 Forbidden (locked in production)
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatbooking.config import settings

log = logging.getLogger("chatbooking.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _check(secret: str, presented: str | None, name: str) -> None:
    if not secret:
        if settings.debug:
            return  # Local dev, allow without auth
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{name} not configured. Set {name} in .env.",
        )

    if not presented or not hmac.compare_digest(presented, secret):
        log.warning("Rejected request with invalid or missing %s", name)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency: protect admin endpoints with a bearer token."""
    _check(settings.admin_api_key, credentials.credentials if credentials else None, "ADMIN_API_KEY")


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    x_cron_secret: str | None = Header(default=None),
) -> None:
    """FastAPI dependency: protect scheduler-triggered endpoints."""
    presented = credentials.credentials if credentials else x_cron_secret
    _check(settings.cron_secret, presented, "CRON_SECRET")
