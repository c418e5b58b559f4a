"""FastAPI dependencies for the administration API.

IdP administration is guarded by a static bearer token (ADMIN_API_TOKEN).
When no token is configured the administration API is closed.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import Depends, HTTPException, Request, status

from grc_idp.config import Settings, get_settings
from grc_idp.core.request import RequestContext

log = structlog.get_logger(__name__)

ADMIN_ACTOR = "admin-api"


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_admin(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> RequestContext:
    """Check the admin bearer token and return the audit context for the caller."""
    configured = settings.admin_api_token
    if configured is None or not configured.get_secret_value():
        log.warning("auth.admin.disabled", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administration API is disabled",
        )

    presented = _bearer_token(request)
    if presented is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(
        presented.encode("utf-8"), configured.get_secret_value().encode("utf-8")
    ):
        log.warning("auth.admin.rejected", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return RequestContext.from_request(request, actor_id=ADMIN_ACTOR)
