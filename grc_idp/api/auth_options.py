"""Login options shown on the sign-in page.

GET /auth/options - Enabled providers (evaluation order) and the login mode
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends

from grc_idp.api.deps import get_provider_service
from grc_idp.config import Settings, get_settings
from grc_idp.models.idp_provider import IdpDriverKey, IdpProvider
from grc_idp.services.idp_providers import IdpProviderService

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_AUTHORIZE_PATHS = {
    IdpDriverKey.OIDC: "/api/auth/oidc/authorize",
    IdpDriverKey.ENTRA: "/api/auth/oidc/authorize",
    IdpDriverKey.SAML: "/api/auth/saml/redirect",
}


def authorize_link(provider: IdpProvider) -> str | None:
    """Browser entry point for redirect-based drivers; None for LDAP."""
    path = _AUTHORIZE_PATHS.get(provider.driver.lower())
    if path is None:
        return None
    return f"{path}?provider={provider.id}"


def login_mode(local_enabled: bool, has_providers: bool) -> str:
    if local_enabled and has_providers:
        return "mixed"
    if local_enabled:
        return "local_only"
    if has_providers:
        return "idp_only"
    return "none"


@router.get("/options", summary="List enabled login options")
async def auth_options(
    service: IdpProviderService = Depends(get_provider_service),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    providers: list[dict[str, Any]] = []
    if await service.persistence_available():
        for provider in await service.enabled():
            providers.append(
                {
                    "id": str(provider.id),
                    "key": provider.key,
                    "name": provider.name,
                    "driver": provider.driver,
                    "links": {"authorize": authorize_link(provider)},
                }
            )

    local_enabled = settings.auth_local_enabled
    auto_redirect = None
    redirectable = [entry for entry in providers if entry["links"]["authorize"]]
    if not local_enabled and len(redirectable) == 1:
        auto_redirect = redirectable[0]["links"]["authorize"]

    return {
        "ok": True,
        "mode": login_mode(local_enabled, bool(providers)),
        "local": {"enabled": local_enabled},
        "idp": {"providers": providers},
        "auto_redirect": auto_redirect,
    }
