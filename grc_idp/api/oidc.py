"""OpenID Connect / Entra ID endpoints.

Prefix: /api/auth/oidc

Routes:
    GET  /authorize - Build the authorization URL (PKCE + nonce + state)
    POST /login     - Exchange the callback code (or id_token) for a login
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from grc_idp.api.deps import (
    get_oidc_authenticator,
    get_oidc_authorization,
    get_oidc_state_store,
    get_provider_service,
    resolve_login_provider,
    user_payload,
    wants_json,
)
from grc_idp.auth.dispatch import authenticate_with_provider
from grc_idp.auth.oidc.authenticator import OIDC_DRIVERS, OidcAuthenticator
from grc_idp.auth.oidc.authorize import OidcAuthorizationService
from grc_idp.auth.oidc.state_store import OidcStateStore, merge_state_payload
from grc_idp.core.errors import OidcProviderError, ProviderLookupFailed
from grc_idp.core.input_validation import safe_return_path
from grc_idp.core.request import RequestContext
from grc_idp.services.idp_providers import IdpProviderService

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth/oidc", tags=["oidc"])


class OidcLoginRequest(BaseModel):
    provider: str | None = Field(None, max_length=160)
    code: str | None = None
    id_token: str | None = None
    state: str | None = None
    redirect_uri: str | None = None
    nonce: str | None = None
    code_verifier: str | None = None


@router.get("/authorize", summary="Start an OIDC login")
async def oidc_authorize(
    request: Request,
    provider: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    return_to: str | None = Query(None, alias="return"),
    service: IdpProviderService = Depends(get_provider_service),
    authorization: OidcAuthorizationService = Depends(get_oidc_authorization),
) -> Any:
    record = await resolve_login_provider(service, provider, OIDC_DRIVERS)

    try:
        result = await authorization.authorize(
            record,
            RequestContext.from_request(request),
            redirect_uri=redirect_uri,
            return_to=safe_return_path(return_to),
        )
    except OidcProviderError as exc:
        log.warning("auth.oidc.discovery_failed", provider_key=record.key, error=str(exc))
        raise ProviderLookupFailed("IDP_OIDC_DISCOVERY_FAILED", 502) from exc

    if wants_json(request):
        return {
            "ok": True,
            "redirect": result.url,
            "state": result.state,
            "redirect_uri": result.redirect_uri,
        }
    return RedirectResponse(result.url, status_code=302)


@router.post("/login", summary="Complete an OIDC login")
async def oidc_login(
    body: OidcLoginRequest,
    request: Request,
    service: IdpProviderService = Depends(get_provider_service),
    state_store: OidcStateStore = Depends(get_oidc_state_store),
    authenticator: OidcAuthenticator = Depends(get_oidc_authenticator),
) -> dict[str, Any]:
    context = RequestContext.from_request(request)
    payload = body.model_dump(exclude_none=True)

    stored: dict[str, str] | None = None
    if body.state:
        stored = await state_store.consume(body.state, context)
        if stored is None:
            raise ProviderLookupFailed("IDP_OIDC_STATE_INVALID", 422)

    identifier = body.provider or (stored or {}).get("provider_id")
    provider = await resolve_login_provider(service, identifier, OIDC_DRIVERS)

    if stored is not None:
        same_provider = stored.get("provider_id") == str(provider.id) or (
            stored.get("provider_key") == provider.key
        )
        if not same_provider:
            log.warning("auth.oidc.state_provider_mismatch", provider_key=provider.key)
            raise ProviderLookupFailed("IDP_OIDC_STATE_MISMATCH", 422)
        payload = merge_state_payload(payload, stored)

    user = await authenticate_with_provider(provider, payload, context, oidc=authenticator)
    response: dict[str, Any] = {"ok": True, "user": user_payload(user)}
    if stored is not None and stored.get("return_to"):
        response["return_to"] = stored["return_to"]
    return response
