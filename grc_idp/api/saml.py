"""SAML 2.0 browser endpoints.

Prefix: /api/auth/saml

Routes:
    GET  /redirect  - Start SP-initiated login (AuthnRequest redirect, or JSON)
    POST /acs       - Assertion Consumer Service
    GET  /metadata  - SP metadata XML

The ACS never answers with an error page. It always redirects to the
frontend callback, carrying either ``dest`` (where to continue) or
``error`` (a message safe to show the user).
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Form, Query, Request, Response
from fastapi.responses import RedirectResponse

from grc_idp.api.deps import (
    get_provider_service,
    get_saml_authenticator,
    get_sp_resolver,
    resolve_login_provider,
    wants_json,
)
from grc_idp.auth.dispatch import authenticate_with_provider
from grc_idp.auth.saml.authenticator import SamlAuthenticator
from grc_idp.auth.saml.sp_config import (
    SamlServiceProviderConfigResolver,
    SamlServiceProviderMetadataBuilder,
)
from grc_idp.config import Settings, get_settings
from grc_idp.core.errors import (
    ProviderLookupFailed,
    SamlLibraryError,
    SamlMetadataError,
    SamlStateError,
    ValidationFailed,
)
from grc_idp.core.input_validation import safe_return_path
from grc_idp.core.request import RequestContext
from grc_idp.idp.registry import IdpDriverRegistry, get_driver_registry
from grc_idp.models.idp_provider import IdpDriverKey
from grc_idp.services.idp_providers import IdpProviderService
from grc_idp.telemetry.logging import bind_provider_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth/saml", tags=["saml"])

SAML_METADATA_MEDIA_TYPE = "application/samlmetadata+xml"


def callback_url(settings: Settings, **params: str) -> str:
    return f"{settings.base_url}/auth/callback?{urlencode({'saml': '1', **params})}"


def _error_redirect(settings: Settings, message: str) -> RedirectResponse:
    return RedirectResponse(callback_url(settings, error=message), status_code=303)


@router.get("/redirect", summary="Start a SAML login")
async def saml_redirect(
    request: Request,
    provider: str | None = Query(None),
    return_to: str | None = Query(None, alias="return"),
    service: IdpProviderService = Depends(get_provider_service),
    drivers: IdpDriverRegistry = Depends(get_driver_registry),
    authenticator: SamlAuthenticator = Depends(get_saml_authenticator),
) -> Any:
    record = await resolve_login_provider(service, provider, (IdpDriverKey.SAML,))

    try:
        drivers.get(record.driver).normalize_config(dict(record.config or {}))
    except ValidationFailed as exc:
        raise ProviderLookupFailed(
            "IDP_PROVIDER_INVALID", 422, {"message": exc.first_message(), "errors": exc.errors}
        ) from exc

    try:
        built, _ = await authenticator.start_login(
            record, safe_return_path(return_to), RequestContext.from_request(request)
        )
    except SamlLibraryError as exc:
        log.error("auth.saml.request_failed", provider_key=record.key, error=str(exc))
        raise ProviderLookupFailed("IDP_SAML_REQUEST_FAILED", 500) from exc

    if wants_json(request):
        return {"ok": True, "redirect": built.url}
    return RedirectResponse(built.url, status_code=302)


@router.post("/acs", summary="SAML Assertion Consumer Service")
async def saml_acs(
    request: Request,
    saml_response: str | None = Form(None, alias="SAMLResponse"),
    relay_state: str | None = Form(None, alias="RelayState"),
    relay_state_alt: str | None = Form(None, alias="relay_state"),
    service: IdpProviderService = Depends(get_provider_service),
    authenticator: SamlAuthenticator = Depends(get_saml_authenticator),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    context = RequestContext.from_request(request)
    token = (relay_state or relay_state_alt or "").strip()
    if not token:
        return _error_redirect(settings, "Missing RelayState in SAML response.")

    try:
        descriptor = await authenticator.consume_relay_state(token, context)
    except SamlStateError as exc:
        log.info("auth.saml.state_rejected", reason=str(exc))
        return _error_redirect(settings, "SAML sign-in session has expired. Please try again.")

    provider = await service.find_by_id_or_key(descriptor.provider_id)
    if provider is None or not provider.enabled or provider.driver.lower() != IdpDriverKey.SAML:
        return _error_redirect(settings, "Configured SAML provider not found.")
    bind_provider_context(provider.key, provider.driver)

    try:
        user = await authenticate_with_provider(
            provider,
            {"SAMLResponse": saml_response, "request_id": descriptor.request_id},
            context,
            saml=authenticator,
        )
    except ValidationFailed as exc:
        return _error_redirect(settings, exc.first_message() or "SAML authentication failed.")

    log.info("auth.saml.acs_completed", provider_key=provider.key, user_id=str(user.id))
    return RedirectResponse(
        callback_url(settings, dest=descriptor.intended_path or "/"), status_code=303
    )


@router.get("/metadata", summary="SAML service provider metadata")
async def saml_sp_metadata(
    sp_resolver: SamlServiceProviderConfigResolver = Depends(get_sp_resolver),
) -> Response:
    try:
        xml = SamlServiceProviderMetadataBuilder().build(sp_resolver.resolve())
    except SamlMetadataError as exc:
        raise ValidationFailed.single("sp", str(exc)) from exc
    return Response(content=xml, media_type=SAML_METADATA_MEDIA_TYPE)
